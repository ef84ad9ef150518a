import os
import sys
import tempfile
import threading
import unittest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from cnr.errors import CursorStoreError  # noqa: E402
from cnr.state.sqlite_store import SqliteCursorStore, SqliteStateStore  # noqa: E402


class TestSqliteStateStore(unittest.TestCase):
    def test_cursor_roundtrip_and_reset(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = os.path.join(td, "state.sqlite3")
            store = SqliteCursorStore(state=SqliteStateStore(db), feed_key="dropbox:files")

            self.assertIsNone(store.load())
            store.save("AAA-1")
            self.assertEqual(store.load(), "AAA-1")
            store.save("AAA-2")
            self.assertEqual(store.load(), "AAA-2")
            store.reset()
            self.assertIsNone(store.load())

    def test_cursor_survives_restart(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = os.path.join(td, "state.sqlite3")
            SqliteStateStore(db).set_cursor("clickup:1:tasks", "17")

            reopened = SqliteStateStore(db)
            self.assertEqual(reopened.get_cursor("clickup:1:tasks"), "17")

    def test_feeds_are_isolated(self) -> None:
        state = SqliteStateStore(":memory:")
        a = SqliteCursorStore(state=state, feed_key="a")
        b = SqliteCursorStore(state=state, feed_key="b")

        a.save("ca")
        self.assertIsNone(b.load())
        b.save("cb")
        a.reset()
        self.assertIsNone(a.load())
        self.assertEqual(b.load(), "cb")

    def test_inbox_append_and_read(self) -> None:
        state = SqliteStateStore(":memory:")
        s1 = state.append_inbox("k", {"event": "taskStatusUpdated", "task_id": "t1"})
        s2 = state.append_inbox("other", {"event": "x"})
        s3 = state.append_inbox("k", {"event": "taskStatusUpdated", "task_id": "t2", "名称": "任务"})
        self.assertLess(s1, s2)
        self.assertLess(s2, s3)

        items = state.read_inbox("k", after_seq=0, limit=10)
        self.assertEqual([i.seq for i in items], [s1, s3])
        self.assertEqual(items[1].payload["名称"], "任务")

        self.assertEqual([i.seq for i in state.read_inbox("k", after_seq=s1, limit=10)], [s3])
        self.assertEqual(len(state.read_inbox("k", after_seq=0, limit=1)), 1)

    def test_dispatch_failures_are_counted(self) -> None:
        state = SqliteStateStore(":memory:")
        self.assertEqual(state.count_dispatch_failures(), 0)
        state.record_dispatch_failure(feed_key="a", subject_id="t1", channel="c", error="boom")
        state.record_dispatch_failure(feed_key="b", subject_id="t2", channel="c", error="boom")
        self.assertEqual(state.count_dispatch_failures(), 2)
        self.assertEqual(state.count_dispatch_failures("a"), 1)

    def test_unusable_path_raises_cursor_store_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SqliteStateStore(os.path.join(td, "missing-dir", "state.sqlite3"))
            with self.assertRaises(CursorStoreError):
                store.get_cursor("a")
            with self.assertRaises(CursorStoreError):
                store.set_cursor("a", "c")

    def test_concurrent_save_and_load_never_sees_partial_cursor(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SqliteCursorStore(state=SqliteStateStore(os.path.join(td, "state.sqlite3")), feed_key="k")
            written = {f"cursor-{i}-" + "x" * 200 for i in range(50)}
            seen: list[str | None] = []
            errors: list[BaseException] = []

            def writer() -> None:
                try:
                    for c in sorted(written):
                        store.save(c)
                except BaseException as e:  # noqa: BLE001
                    errors.append(e)

            def reader() -> None:
                try:
                    for _ in range(100):
                        seen.append(store.load())
                except BaseException as e:  # noqa: BLE001
                    errors.append(e)

            threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(30)

            self.assertEqual(errors, [])
            self.assertTrue(all(c is None or c in written for c in seen))
            self.assertEqual(store.load(), max(written))


if __name__ == "__main__":
    unittest.main()
