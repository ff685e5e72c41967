import asyncio
import json
import sys
from pathlib import Path

import pytest

from genflow.errors import AlreadyRunningError, WorkerIOError
from genflow.gateway import TelemetryGateway
from genflow.supervisor import FINISHED_MESSAGE, JobConfig, JobSupervisor, WorkerEvent

from fakes import FakeWorker, make_supervisor


async def settle():
    await asyncio.sleep(0.01)


def test_start_spawns_worker_and_resets_stats():
    async def run_case():
        sup, workers = make_supervisor(env={"PATH": "/bin"})
        sup.stats.rare = 9
        await sup.start(JobConfig(account_count=100, region="IND"))
        w = workers[0]
        assert w.argv[:3] == ["python3", "-u", "worker.py"]
        assert json.loads(w.argv[3])["region"] == "IND"
        assert json.loads(w.argv[3])["account_count"] == 100
        assert w.env == {"PATH": "/bin", "PYTHONUNBUFFERED": "1", "PYTHONIOENCODING": "utf-8"}
        assert sup.status() == {"has_job": True}
        assert sup.stats.to_dict() == {
            "generated": 0, "target": 100, "rare": 0, "couples": 0,
            "activated": 0, "failed": 0, "speed": 0, "is_running": True,
        }
        sup.stop()
        await sup.wait()

    asyncio.run(run_case())


def test_second_start_is_rejected_without_side_effects():
    async def run_case():
        sup, workers = make_supervisor()
        await sup.start(JobConfig(account_count=100))
        workers[0].feed("Registration 4/100")
        await settle()
        before = sup.stats.to_dict()
        with pytest.raises(AlreadyRunningError):
            await sup.start(JobConfig(account_count=5))
        assert len(workers) == 1
        assert sup.stats.to_dict() == before
        sup.stop()
        await sup.wait()

    asyncio.run(run_case())


def test_stop_when_idle_is_a_noop():
    sup, _ = make_supervisor()
    before = sup.stats.to_dict()
    assert sup.stop() is False
    assert sup.stats.to_dict() == before
    assert sup.status() == {"has_job": False}
    assert len(sup.logs) == 0


def test_end_to_end_counters_follow_worker_output():
    async def run_case():
        sup, workers = make_supervisor()
        await sup.start(JobConfig.from_dict({"account_count": 100}))
        w = workers[0]
        w.feed("Registration 1/100")
        await settle()
        assert (sup.stats.generated, sup.stats.target) == (1, 100)
        w.feed("💎 RARE ACCOUNT FOUND: X")
        await settle()
        assert sup.stats.rare == 1
        w.feed("🔥 Activated! Total: 3")
        await settle()
        assert sup.stats.activated == 3
        assert [e.category for e in sup.logs.snapshot()] == ["info", "rare", "activation"]
        sup.stop()
        await sup.wait()

    asyncio.run(run_case())


def test_stderr_lines_are_errors_and_skip_extraction():
    async def run_case():
        sup, workers = make_supervisor()
        await sup.start(JobConfig(account_count=10))
        workers[0].feed("Registration 5/10 ✅", kind="stderr")
        await settle()
        entry = sup.logs.snapshot()[-1]
        assert entry.category == "error"
        assert entry.message == "Registration 5/10 ✅"
        assert sup.stats.generated == 0
        assert sup.has_job
        sup.stop()
        await sup.wait()

    asyncio.run(run_case())


def test_worker_exit_marks_job_finished_without_polling():
    async def run_case():
        sup, workers = make_supervisor()
        await sup.start(JobConfig(account_count=2))
        workers[0].feed("Registration 2/2")
        workers[0].exit(0)
        await sup.wait()
        assert sup.stats.is_running is False
        assert sup.status() == {"has_job": False}
        finished = [e for e in sup.logs.snapshot() if e.message == FINISHED_MESSAGE]
        assert len(finished) == 1
        assert finished[0].category == "info"
        assert sup.stats.generated == 2

    asyncio.run(run_case())


def test_stop_discards_handle_immediately():
    async def run_case():
        sup, workers = make_supervisor()
        await sup.start(JobConfig(account_count=2))
        assert sup.stop() is True
        assert workers[0].killed
        assert sup.status() == {"has_job": False}
        assert sup.stats.is_running is False
        await sup.wait()
        assert sup.logs.snapshot()[-1].message == FINISHED_MESSAGE

    asyncio.run(run_case())


def test_stopped_worker_cannot_touch_the_next_job():
    async def run_case():
        sup, workers = make_supervisor()
        await sup.start(JobConfig(account_count=10))
        old = workers[0]
        # keep the old worker alive after the stop signal
        old.kill = lambda: setattr(old, "killed", True)
        sup.stop()
        await sup.start(JobConfig(account_count=20))
        old.feed("Registration 9/10")
        old.feed("RARE ACCOUNT FOUND")
        old.exit(0)
        await settle()
        assert sup.has_job
        assert sup.stats.is_running is True
        assert (sup.stats.generated, sup.stats.target, sup.stats.rare) == (0, 20, 0)
        # its output is still visible to operators
        assert "Registration 9/10" in [e.message for e in sup.logs.snapshot()]
        sup.stop()
        await sup.wait()

    asyncio.run(run_case())


def test_logs_persist_across_runs():
    async def run_case():
        sup, workers = make_supervisor()
        await sup.start(JobConfig(account_count=1))
        workers[0].feed("first run line")
        workers[0].exit(0)
        await sup.wait()
        await sup.start(JobConfig(account_count=1))
        workers[1].feed("second run line")
        workers[1].exit(0)
        await sup.wait()
        messages = [e.message for e in sup.logs.snapshot()]
        assert messages == ["first run line", FINISHED_MESSAGE, "second run line", FINISHED_MESSAGE]

    asyncio.run(run_case())


def test_spawn_failure_raises_worker_io_error():
    async def run_case():
        class Broken(FakeWorker):
            async def spawn(self):
                raise FileNotFoundError("no such interpreter")

        sup = JobSupervisor(worker_factory=Broken)
        with pytest.raises(WorkerIOError):
            await sup.start(JobConfig(account_count=50))
        assert sup.status() == {"has_job": False}
        assert sup.stats.target == 0
        assert sup.stats.is_running is False
        assert sup.logs.snapshot()[-1].category == "error"

    asyncio.run(run_case())


def test_broken_event_stream_ends_the_job():
    async def run_case():
        class Exploding(FakeWorker):
            async def events(self):
                yield WorkerEvent("message", "Registration 1/3")
                raise RuntimeError("pipe vanished")

        sup = JobSupervisor(worker_factory=Exploding)
        await sup.start(JobConfig(account_count=3))
        await sup.wait()
        assert sup.has_job is False
        assert sup.stats.generated == 1
        messages = [e.message for e in sup.logs.snapshot()]
        assert any("pipe vanished" in m for m in messages)
        assert messages[-1] == FINISHED_MESSAGE

    asyncio.run(run_case())


def test_real_worker_process(tmp_path: Path):
    script = tmp_path / "worker.py"
    script.write_text(
        "import json, sys\n"
        "cfg = json.loads(sys.argv[1])\n"
        "n = cfg['account_count']\n"
        "for i in range(1, n + 1):\n"
        "    print(f'Registration {i}/{n}')\n"
        "print('💎 RARE ACCOUNT FOUND: 777')\n"
        "print('🔥 Activated! Total: 2')\n"
        "print('proxy refused', file=sys.stderr)\n",
        encoding="utf-8",
    )

    async def run_case():
        sup = JobSupervisor(worker_script=str(script), python=sys.executable)
        await sup.start(JobConfig(account_count=3))
        await asyncio.wait_for(sup.wait(), timeout=30)
        return sup

    sup = asyncio.run(run_case())
    assert sup.stats.to_dict() == {
        "generated": 3, "target": 3, "rare": 1, "couples": 0,
        "activated": 2, "failed": 0, "speed": 0, "is_running": False,
    }
    entries = sup.logs.snapshot()
    assert ("proxy refused", "error") in [(e.message, e.category) for e in entries]
    assert entries[-1].message == FINISHED_MESSAGE


def test_real_worker_can_be_stopped(tmp_path: Path):
    script = tmp_path / "sleeper.py"
    script.write_text(
        "import time\n"
        "print('Registration 0/5', flush=True)\n"
        "time.sleep(60)\n",
        encoding="utf-8",
    )

    async def run_case():
        sup = JobSupervisor(worker_script=str(script), python=sys.executable)
        await sup.start(JobConfig(account_count=5))
        for _ in range(200):
            if len(sup.logs):
                break
            await asyncio.sleep(0.05)
        assert sup.stop() is True
        await asyncio.wait_for(sup.wait(), timeout=30)
        return sup

    sup = asyncio.run(run_case())
    assert sup.has_job is False
    assert sup.stats.target == 5
    assert sup.logs.snapshot()[-1].message == FINISHED_MESSAGE


def test_overlapping_starts_spawn_one_worker():
    async def run_case():
        sup, workers = make_supervisor()
        gw = TelemetryGateway(sup)
        body = json.dumps({"action": "start", "config": {"account_count": 10}})
        responses = await asyncio.gather(gw.handle("POST", {}, body), gw.handle("POST", {}, body))
        has_job = sup.has_job
        sup.stop()
        await asyncio.wait_for(sup.wait(), timeout=5)
        return [r.status for r in responses], has_job, workers

    statuses, has_job, workers = asyncio.run(run_case())
    assert sorted(statuses) == [200, 400]
    assert has_job
    assert len(workers) == 1
    assert workers[0].killed


def test_failed_spawn_releases_the_slot():
    async def run_case():
        attempts = []

        class FlakyWorker(FakeWorker):
            async def spawn(self):
                await asyncio.sleep(0)
                if not attempts:
                    attempts.append(self)
                    raise FileNotFoundError("interpreter missing")

        sup = JobSupervisor(worker_factory=FlakyWorker)
        with pytest.raises(WorkerIOError):
            await sup.start(JobConfig(account_count=1))
        await sup.start(JobConfig(account_count=1))
        assert sup.has_job
        sup.stop()
        await sup.wait()

    asyncio.run(run_case())
