"""
Tests for the background operation runner.

Covers:
1. Outcome mapping: result -> Done, cancellation -> Cancelled, package
   errors -> Failed with their message, anything else -> Failed (generic)
2. One active operation per kind; other kinds run alongside
3. Cancel reaches the operation's token; unknown ids raise KeyError
4. Records are persisted under the runs directory
"""

import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from src.modshare.errors import BusyError, TransportError
from src.modshare.operations.models import OperationKind
from src.modshare.operations.runner import OperationRunner
from src.shared.task_status import TaskStatus


class TestOperationRunner(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.runs_dir = Path(self.temp_dir.name) / "runs"
        self.runner = OperationRunner(runs_dir=self.runs_dir)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _run(self, fn, kind=OperationKind.UPLOAD):
        async def run_test():
            operation = await self.runner.start(kind, "test", fn)
            return await self.runner.wait(operation.operation_id)

        return asyncio.run(run_test())

    def test_success_records_result_and_progress(self):
        async def fn(operation, cancel, report):
            report({"fraction": 1.0})
            return {"uploaded": 2}

        operation = self._run(fn)
        self.assertEqual(operation.status, TaskStatus.DONE)
        self.assertEqual(operation.result, {"uploaded": 2})
        self.assertEqual(operation.progress, {"fraction": 1.0})
        self.assertIsNone(operation.error)

        persisted = json.loads((self.runs_dir / f"{operation.operation_id}.json").read_text(encoding="utf-8"))
        self.assertEqual(persisted["status"], "Done")
        self.assertEqual(persisted["kind"], "upload")
        self.assertGreaterEqual(persisted["runtime_s"], 0.0)

    def test_package_error_message_is_kept(self):
        async def fn(operation, cancel, report):
            raise TransportError("relay unreachable")

        operation = self._run(fn)
        self.assertEqual(operation.status, TaskStatus.FAILED)
        self.assertEqual(operation.error, "relay unreachable")

    def test_unexpected_error_is_generic(self):
        async def fn(operation, cancel, report):
            raise RuntimeError("secret internals")

        with self.assertLogs("src.modshare.operations.runner", level="ERROR"):
            operation = self._run(fn, OperationKind.BACKUP)
        self.assertEqual(operation.status, TaskStatus.FAILED)
        self.assertEqual(operation.error, "backup failed unexpectedly")

    def test_cancel_reaches_token(self):
        async def run_test():
            started = asyncio.Event()

            async def fn(operation, cancel, report):
                started.set()
                while True:
                    cancel.raise_if_cancelled()
                    await asyncio.sleep(0.01)

            operation = await self.runner.start(OperationKind.REDOWNLOAD, "slow", fn)
            await started.wait()
            self.assertEqual(await self.runner.cancel(operation.operation_id), TaskStatus.RUNNING)
            return await self.runner.wait(operation.operation_id)

        operation = asyncio.run(run_test())
        self.assertEqual(operation.status, TaskStatus.CANCELLED)
        self.assertIsNone(operation.error)

    def test_one_active_operation_per_kind(self):
        async def run_test():
            release = asyncio.Event()

            async def fn(operation, cancel, report):
                await release.wait()

            first = await self.runner.start(OperationKind.UPLOAD, "first", fn)
            with self.assertRaises(BusyError):
                await self.runner.start(OperationKind.UPLOAD, "second", fn)
            other = await self.runner.start(OperationKind.BACKUP, "other kind", fn)

            snapshot = await self.runner.snapshot()
            self.assertEqual(snapshot["active"], {"upload": first.operation_id, "backup": other.operation_id})

            release.set()
            await self.runner.wait(first.operation_id)
            await self.runner.wait(other.operation_id)

            again = await self.runner.start(OperationKind.UPLOAD, "after", fn)
            await self.runner.wait(again.operation_id)
            return await self.runner.snapshot()

        snapshot = asyncio.run(run_test())
        self.assertEqual(snapshot["active"], {})
        self.assertEqual(len(snapshot["operations"]), 3)

    def test_unknown_ids(self):
        async def run_test():
            self.assertIsNone(await self.runner.get("missing"))
            with self.assertRaises(KeyError):
                await self.runner.cancel("missing")
            with self.assertRaises(KeyError):
                await self.runner.wait("missing")

        asyncio.run(run_test())

    def test_shutdown_cancels_running(self):
        async def run_test():
            async def fn(operation, cancel, report):
                while True:
                    cancel.raise_if_cancelled()
                    await asyncio.sleep(0.01)

            operation = await self.runner.start(OperationKind.UPLOAD, "forever", fn)
            await asyncio.sleep(0)
            await self.runner.shutdown()
            return await self.runner.get(operation.operation_id)

        operation = asyncio.run(run_test())
        self.assertEqual(operation.status, TaskStatus.CANCELLED)


if __name__ == "__main__":
    unittest.main()
