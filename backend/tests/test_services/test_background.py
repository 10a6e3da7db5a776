"""Tests for the in-process runner and the per-loop HTTP client pool."""
import asyncio
import threading

import pytest

from skillbase.services.background import BackgroundRunner, InlineRunner
from skillbase.services.http_client_manager import close_all_clients, get_http_client, open_client_count


class TestBackgroundRunner:
    def test_runs_job_on_worker_thread(self):
        runner = BackgroundRunner(max_workers=1)
        seen = {}

        async def job():
            seen["thread"] = threading.current_thread().name
            return 42

        future = runner.submit("run-1", job, lambda run_id, exc: None)
        assert future.result(timeout=5) == 42
        assert seen["thread"].startswith("batch-run")
        runner.shutdown()
        assert runner.active_runs() == []

    def test_errors_reach_callback(self):
        runner = BackgroundRunner(max_workers=1)
        errors = []

        async def job():
            raise RuntimeError("boom")

        future = runner.submit("run-2", job, lambda run_id, exc: errors.append((run_id, str(exc))))
        with pytest.raises(RuntimeError):
            future.result(timeout=5)
        runner.shutdown()
        assert errors == [("run-2", "boom")]

    def test_inline_runner(self):
        errors = []

        async def job():
            raise ValueError("bad")

        future = InlineRunner().submit("run-3", job, lambda run_id, exc: errors.append(run_id))
        assert isinstance(future.exception(), ValueError)
        assert errors == ["run-3"]


class TestHttpClientPool:
    def test_client_reused_within_loop(self):
        async def scenario():
            first = get_http_client("anthropic", 30)
            second = get_http_client("anthropic", 30)
            other = get_http_client("ollama", 30)
            same = first is second and first is not other
            await close_all_clients()
            return same, first.is_closed

        assert asyncio.run(scenario()) == (True, True)

    def test_loops_do_not_share_or_close_each_others_clients(self):
        async def open_one():
            return get_http_client("openai", 30)

        async def close_mine():
            await close_all_clients()

        loop_a = asyncio.new_event_loop()
        loop_b = asyncio.new_event_loop()
        try:
            client_a = loop_a.run_until_complete(open_one())
            client_b = loop_b.run_until_complete(open_one())
            assert client_a is not client_b

            loop_b.run_until_complete(close_mine())
            assert client_b.is_closed
            assert not client_a.is_closed
            assert open_client_count() >= 1
        finally:
            loop_a.run_until_complete(close_mine())
            loop_a.close()
            loop_b.close()
        assert client_a.is_closed
