from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("TRIPBOARD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("TRIPBOARD_HOST", "0.0.0.0")
    port = int(os.getenv("TRIPBOARD_PORT", "8080"))
    uvicorn.run("tripboard.api:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
