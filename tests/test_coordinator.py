import threading
import time
import unittest

from tripboard.coordinator import MutationSpec, OptimisticMutationCoordinator, ViewCache
from tripboard.errors import ConflictError, ValidationError


class ViewCacheTests(unittest.TestCase):
    def test_reads_are_copies(self) -> None:
        cache = ViewCache()
        cache.write("k", {"items": [1]})
        cache.read("k")["items"].append(2)
        self.assertEqual(cache.read("k"), {"items": [1]})

    def test_snapshot_restore_removes_views_added_after_snapshot(self) -> None:
        cache = ViewCache()
        cache.write("a", [1])
        snapshot = cache.snapshot(["a", "b"])
        cache.write("a", [2])
        cache.write("b", [3])
        cache.invalidate(["a"])
        cache.restore(snapshot)
        self.assertEqual(cache.read("a"), [1])
        self.assertFalse(cache.is_stale("a"))
        self.assertFalse(cache.has("b"))


class CoordinatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.stale_calls: list[list[str]] = []
        self.coordinator = OptimisticMutationCoordinator(on_stale=self.stale_calls.append)
        self.cache = self.coordinator.cache
        self.cache.write("list", [{"id": "a", "votes": 0}, {"id": "b", "votes": 0}])
        self.cache.write("other", ["untouched"])

    def _bump(self, view):
        return [dict(item, votes=item["votes"] + 1) if item["id"] == "a" else item for item in view]

    def test_speculative_state_visible_during_durable_call(self) -> None:
        seen = []

        def durable():
            seen.append(self.cache.read("list"))
            return "ok"

        result = self.coordinator.apply(MutationSpec(entity_key="e", durable=durable, speculative={"list": self._bump}))
        self.assertEqual(result, "ok")
        self.assertEqual(seen[0][0]["votes"], 1)

    def test_success_commits_and_invalidates(self) -> None:
        def commit(result, views):
            return {"list": [dict(item, votes=result) for item in views["list"]]}

        self.coordinator.apply(
            MutationSpec(entity_key="e", durable=lambda: 7, speculative={"list": self._bump}, commit=commit)
        )
        self.assertEqual([item["votes"] for item in self.cache.read("list")], [7, 7])
        self.assertTrue(self.cache.is_stale("list"))
        self.assertFalse(self.cache.is_stale("other"))

    def test_failure_restores_snapshot_exactly(self) -> None:
        before = self.cache.snapshot(["list", "other"])

        def durable():
            raise ValidationError("nope")

        with self.assertRaises(ValidationError):
            self.coordinator.apply(
                MutationSpec(entity_key="e", durable=durable, speculative={"list": self._bump}, invalidate=["other"])
            )
        self.assertEqual(self.cache.snapshot(["list", "other"]), before)
        self.assertEqual(self.stale_calls, [])

    def test_stale_failure_requests_refetch(self) -> None:
        def durable():
            raise ConflictError("raced")

        with self.assertRaises(ConflictError):
            self.coordinator.apply(MutationSpec(entity_key="e", durable=durable, speculative={"list": self._bump}))
        self.assertEqual(self.stale_calls, [["list"]])
        self.assertEqual(self.cache.read("list")[0]["votes"], 0)

    def test_speculative_error_never_reaches_durable(self) -> None:
        calls = []

        def explode(view):
            raise ValidationError("bad input")

        with self.assertRaises(ValidationError):
            self.coordinator.apply(
                MutationSpec(entity_key="e", durable=lambda: calls.append(1), speculative={"list": explode})
            )
        self.assertEqual(calls, [])
        self.assertEqual(self.cache.read("list")[0]["votes"], 0)

    def test_uncached_views_are_not_speculated(self) -> None:
        self.coordinator.apply(
            MutationSpec(entity_key="e", durable=lambda: None, speculative={"missing": lambda view: ["x"]})
        )
        self.assertFalse(self.cache.has("missing"))

    def test_commit_cannot_touch_undeclared_views(self) -> None:
        with self.assertRaises(ValueError):
            self.coordinator.apply(
                MutationSpec(
                    entity_key="e",
                    durable=lambda: None,
                    speculative={"list": self._bump},
                    commit=lambda result, views: {"other": []},
                )
            )
        self.assertEqual(self.cache.read("other"), ["untouched"])

    def test_refresh_replaces_view(self) -> None:
        self.cache.invalidate(["list"])
        fresh = self.coordinator.read("list", lambda: [{"id": "z", "votes": 3}])
        self.assertEqual(fresh, [{"id": "z", "votes": 3}])
        self.assertFalse(self.cache.is_stale("list"))

    def test_same_entity_mutations_run_in_order(self) -> None:
        order: list[str] = []
        first_started = threading.Event()
        release_first = threading.Event()

        def slow():
            first_started.set()
            release_first.wait(timeout=5)
            order.append("first")

        def fast():
            order.append("second")

        first = threading.Thread(target=self.coordinator.apply, args=(MutationSpec(entity_key="e", durable=slow),))
        first.start()
        first_started.wait(timeout=5)
        second = threading.Thread(target=self.coordinator.apply, args=(MutationSpec(entity_key="e", durable=fast),))
        second.start()

        deadline = time.monotonic() + 5
        while self.coordinator.in_flight("e") < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(self.coordinator.in_flight("e"), 2)
        self.assertEqual(order, [])

        release_first.set()
        first.join(timeout=5)
        second.join(timeout=5)
        self.assertEqual(order, ["first", "second"])
        self.assertEqual(self.coordinator.in_flight("e"), 0)

    def test_failed_mutation_keeps_other_entity_commit_on_shared_view(self) -> None:
        self.cache.write("schedule", {"item1": "pending", "item2": "pending"})
        first_started = threading.Event()
        release_first = threading.Event()
        failures: list[Exception] = []

        def mark(item_id):
            return lambda view: dict(view, **{item_id: "accepted"})

        def rejected():
            first_started.set()
            release_first.wait(timeout=5)
            raise ConflictError("raced")

        def run_first():
            try:
                self.coordinator.apply(
                    MutationSpec(entity_key="item/1", durable=rejected, speculative={"schedule": mark("item1")})
                )
            except ConflictError as exc:
                failures.append(exc)

        first = threading.Thread(target=run_first)
        first.start()
        first_started.wait(timeout=5)
        second = threading.Thread(
            target=self.coordinator.apply,
            args=(
                MutationSpec(
                    entity_key="item/2",
                    durable=lambda: "accepted",
                    speculative={"schedule": mark("item2")},
                    commit=lambda result, views: {"schedule": dict(views["schedule"], item2=result)},
                ),
            ),
        )
        second.start()

        deadline = time.monotonic() + 5
        while self.coordinator.in_flight("schedule") < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(self.coordinator.in_flight("schedule"), 2)
        self.assertEqual(self.cache.read("schedule"), {"item1": "accepted", "item2": "pending"})

        release_first.set()
        first.join(timeout=5)
        second.join(timeout=5)

        self.assertEqual(len(failures), 1)
        self.assertEqual(self.cache.read("schedule"), {"item1": "pending", "item2": "accepted"})
        self.assertTrue(self.cache.is_stale("schedule"))
        self.assertEqual(self.stale_calls, [["schedule"]])

    def test_stale_callback_can_refresh_views(self) -> None:
        def refetch(keys):
            for key in keys:
                coordinator.refresh(key, lambda: [{"id": "fresh"}])

        coordinator = OptimisticMutationCoordinator(on_stale=refetch)
        coordinator.cache.write("list", [{"id": "a"}])

        def durable():
            raise ConflictError("raced")

        with self.assertRaises(ConflictError):
            coordinator.apply(MutationSpec(entity_key="e", durable=durable, invalidate=["list"]))
        self.assertEqual(coordinator.cache.read("list"), [{"id": "fresh"}])
        self.assertFalse(coordinator.cache.is_stale("list"))

    def test_different_entities_do_not_wait(self) -> None:
        release = threading.Event()
        done = []
        blocker = threading.Thread(
            target=self.coordinator.apply,
            args=(MutationSpec(entity_key="slow", durable=lambda: release.wait(timeout=5)),),
        )
        blocker.start()
        self.coordinator.apply(MutationSpec(entity_key="fast", durable=lambda: done.append(1)))
        self.assertEqual(done, [1])
        release.set()
        blocker.join(timeout=5)


if __name__ == "__main__":
    unittest.main()
