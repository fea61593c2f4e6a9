from __future__ import annotations

import asyncio
import unittest

from stata_run_backend.events import RUN_FINISHED, RUN_LOG_APPEND, RUN_STARTED, RunEventLog


class RunEventLogTests(unittest.IsolatedAsyncioTestCase):
    async def test_list_filters_by_cursor_and_run(self) -> None:
        log = RunEventLog()
        log.add_event(RUN_STARTED, run_id="a", payload={"runId": "a"})
        log.add_event(RUN_STARTED, run_id="b", payload={"runId": "b"})
        log.add_event(RUN_LOG_APPEND, run_id="a", payload={"runId": "a", "text": "x"})

        self.assertEqual([e["id"] for e in log.list_events()], [1, 2, 3])
        self.assertEqual([e["id"] for e in log.list_events(after_id=1)], [2, 3])
        self.assertEqual([e["type"] for e in log.list_events(run_id="a")], [RUN_STARTED, RUN_LOG_APPEND])
        self.assertEqual(len(log.list_events(limit=1)), 1)
        self.assertEqual(log.last_id(), 3)

    async def test_keeps_newest_events(self) -> None:
        log = RunEventLog(max_events=2)
        for index in range(5):
            log.add_event(RUN_LOG_APPEND, run_id="a", payload={"text": str(index)})
        self.assertEqual([e["payload"]["text"] for e in log.list_events()], ["3", "4"])
        self.assertEqual(log.last_id(), 5)

    async def test_emitter_tags_run_id(self) -> None:
        log = RunEventLog()
        emit = log.emitter()
        emit(RUN_FINISHED, {"runId": "r1", "success": True})
        event = log.list_events()[0]
        self.assertEqual(event["run_id"], "r1")
        self.assertEqual(event["type"], RUN_FINISHED)
        self.assertEqual(event["payload"], {"runId": "r1", "success": True})

    async def test_wait_for_events(self) -> None:
        log = RunEventLog()
        self.assertFalse(await log.wait_for_events(timeout=0.01))

        waiter = asyncio.create_task(log.wait_for_events(timeout=1))
        await asyncio.sleep(0)
        log.add_event(RUN_STARTED, run_id="a")
        self.assertTrue(await waiter)


if __name__ == "__main__":
    unittest.main()
