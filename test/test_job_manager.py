"""
分析任务管理测试
"""

import pytest

from lorekeeper.core.state_machine import JobState, can_transition, is_terminal, validate_transition
from lorekeeper.exceptions import ConflictError, InvalidStateTransitionError, ResourceNotFoundError
from lorekeeper.services.content_hash_service import ContentHashService
from lorekeeper.services.job_manager import JobManager

from conftest import PROJECT_ID, FakeCompletionClient, add_chapters, add_element


class TestStateMachine:
    """状态机测试"""

    def test_forward_transitions(self):
        assert can_transition("pending", "thinking")
        assert can_transition("thinking", "extracting")
        assert can_transition("analyzing", "done")
        assert not can_transition("extracting", "analyzing")
        assert not can_transition("done", "failed")

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidStateTransitionError):
            validate_transition("pending", "done")
        with pytest.raises(InvalidStateTransitionError):
            validate_transition("failed", "thinking")

    def test_terminal_states(self):
        assert is_terminal("done")
        assert is_terminal("failed")
        assert not is_terminal("extracting")


class TestJobManager:
    """JobManager 测试"""

    async def test_lifecycle(self, session, clock):
        manager = JobManager(session, clock=clock)
        job = await manager.create_job(PROJECT_ID)
        assert job.state == "pending"
        assert job.total_steps == 4

        await manager.transition(job.id, JobState.THINKING, step="规划")
        clock.advance(seconds=30)
        job = await manager.advance(job.id, "规划完成")
        assert job.completed_steps == 1
        assert job.progress == 25.0
        assert job.heartbeat_at == clock.now

        await manager.transition(job.id, JobState.ANALYZING)
        await manager.transition(job.id, JobState.EXTRACTING)
        job = await manager.complete(job.id, {"chapters": 2})
        assert job.state == "done"
        assert job.progress == 100.0
        assert job.completed_steps == job.total_steps
        assert job.result == {"chapters": 2}
        assert job.completed_at == clock.now

        with pytest.raises(InvalidStateTransitionError):
            await manager.transition(job.id, JobState.THINKING)

    async def test_second_active_job_conflicts(self, session, clock):
        manager = JobManager(session, clock=clock)
        await manager.create_job(PROJECT_ID)
        with pytest.raises(ConflictError):
            await manager.create_job(PROJECT_ID)
        # 其他项目不受影响
        await manager.create_job("project-2")

    async def test_cancel(self, session, clock):
        manager = JobManager(session, clock=clock)
        job = await manager.create_job(PROJECT_ID)
        await manager.transition(job.id, JobState.THINKING)

        cancelled = await manager.cancel(job.id)
        assert cancelled.state == "failed"
        assert cancelled.error_details == {"cancelled": True, "reason": "用户取消", "state_before": "thinking"}
        assert await manager.is_cancelled(job.id) is True

        # 终态任务保持原状
        again = await manager.cancel(job.id)
        assert again.error_details["state_before"] == "thinking"

        clock.advance(seconds=1)
        new_job = await manager.create_job(PROJECT_ID)
        await manager.transition(new_job.id, JobState.THINKING)
        await manager.complete(new_job.id)
        assert (await manager.cancel(new_job.id)).state == "done"

    async def test_request_cancel_response(self, session, clock):
        """取消响应只在任务确实被取消时标记 cancelled"""
        manager = JobManager(session, clock=clock)
        job = await manager.create_job(PROJECT_ID)

        response = await manager.request_cancel(job.id)
        assert (response.job_id, response.cancelled, response.state) == (job.id, True, "failed")

        clock.advance(seconds=1)
        done = await manager.create_job(PROJECT_ID)
        await manager.transition(done.id, JobState.THINKING)
        await manager.complete(done.id)
        finished = await manager.request_cancel(done.id)
        assert (finished.cancelled, finished.state) == (False, "done")

    async def test_service_cancel_matches_job_manager(self, session, clock, make_analysis_service):
        manager = JobManager(session, clock=clock)
        job = await manager.create_job(PROJECT_ID)

        service = make_analysis_service(session, FakeCompletionClient())
        assert await service.cancel(job.id) == await manager.request_cancel(job.id)

    async def test_fail_records_details(self, session, clock):
        manager = JobManager(session, clock=clock)
        job = await manager.create_job(PROJECT_ID)
        job = await manager.fail(job.id, {"failed_chapters": ["ch-1 [extraction_failed]"]})
        assert job.state == "failed"
        assert job.error_details == {"failed_chapters": ["ch-1 [extraction_failed]"]}

    async def test_missing_job(self, session):
        with pytest.raises(ResourceNotFoundError):
            await JobManager(session).get_job("missing")

    async def test_stale_jobs_are_swept(self, session, clock):
        manager = JobManager(session, clock=clock)
        job = await manager.create_job(PROJECT_ID)
        await manager.transition(job.id, JobState.THINKING)

        clock.advance(minutes=4)
        assert await manager.sweep_stale(PROJECT_ID) == []

        clock.advance(minutes=2)
        status = await manager.get_status(PROJECT_ID)
        assert status.is_processing is False
        assert status.has_errors is True
        assert status.current_job.error_details["timeout"] is True
        assert status.current_job.error_details["state_before"] == "thinking"

        # 超时任务不再阻塞新任务
        await manager.create_job(PROJECT_ID)

    async def test_status_counts(self, session, clock):
        await add_chapters(session, [
            {"id": "ch-1", "number": 1, "content": "one"},
            {"id": "ch-2", "number": 2, "content": "two"},
            {"id": "ch-3", "number": 3, "content": "three"},
        ])
        hashes = ContentHashService(session)
        await hashes.commit("ch-1", "one", project_id=PROJECT_ID)
        await hashes.commit("ch-2", "two", project_id=PROJECT_ID)
        await hashes.mark_for_reprocessing(["ch-2"])
        await add_element(session, category="character", name="Aria", confidence_score=0.4)
        await add_element(session, category="character", name="Marcus", confidence_score=0.9)

        manager = JobManager(session, clock=clock)
        empty = await manager.get_status(PROJECT_ID)
        assert empty.is_processing is False
        assert empty.current_job is None
        assert empty.unanalyzed_chapters == 2
        assert empty.low_confidence_facts_count == 1

        job = await manager.create_job(PROJECT_ID)
        await manager.transition(job.id, JobState.THINKING, step="规划")
        status = await manager.get_status(PROJECT_ID)
        assert status.is_processing is True
        assert status.current_job.id == job.id
        assert status.current_job.current_step == "规划"
        assert status.error_count == 0

        await manager.cancel(job.id)
        status = await manager.get_status(PROJECT_ID)
        assert status.has_errors is True
        assert status.error_count == 1
