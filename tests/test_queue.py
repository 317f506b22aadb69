"""
Relay — Workflow Job Queue Tests
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from coordinator.queue import DuplicateResumeError, WorkflowQueue
from coordinator.types import JobStatus, JobType


class TestEnqueue(unittest.TestCase):

    def setUp(self):
        self.queue = WorkflowQueue(concurrency=3)

    def test_start_job(self):
        job_id = self.queue.enqueue_start("run_1", "wf_1")
        job = self.queue.get_job(job_id)
        self.assertEqual(job.type, JobType.START)
        self.assertEqual(job.status, JobStatus.QUEUED)
        self.assertEqual(job.payload, {"workflow_id": "wf_1"})

    def test_resume_job_carries_response(self):
        job = self.queue.get_job(self.queue.enqueue_resume("run_1", "Paris"))
        self.assertEqual(job.type, JobType.RESUME)
        self.assertEqual(job.payload, {"user_response": "Paris"})

    def test_duplicate_resume_rejected(self):
        first = self.queue.enqueue_resume("run_1", "Paris")
        with self.assertRaises(DuplicateResumeError) as cm:
            self.queue.enqueue_resume("run_1", "Rome")
        self.assertEqual(cm.exception.job_id, first)
        self.assertEqual(cm.exception.run_id, "run_1")

    def test_resume_allowed_after_previous_finished(self):
        self.queue.enqueue_resume("run_1", "Paris")
        self.queue.process_one_workflow_job(lambda job: None)
        self.queue.enqueue_resume("run_1", "Rome")
        self.assertEqual(self.queue.status()["queued"], 1)

    def test_listeners_notified(self):
        seen = []
        self.queue.subscribe(seen.append)
        job_id = self.queue.enqueue_start("run_1")
        self.assertEqual([j.id for j in seen], [job_id])


class TestProcessing(unittest.TestCase):

    def setUp(self):
        self.queue = WorkflowQueue()

    def test_fifo_order(self):
        ids = [self.queue.enqueue_start(f"run_{i}") for i in range(3)]
        processed = []
        while True:
            job = self.queue.process_one_workflow_job(lambda j: processed.append(j.run_id))
            if job is None:
                break
        self.assertEqual(processed, ["run_0", "run_1", "run_2"])
        for job_id in ids:
            self.assertEqual(self.queue.get_job(job_id).status, JobStatus.COMPLETED)

    def test_empty_queue(self):
        self.assertIsNone(self.queue.process_one_workflow_job(lambda j: None))

    def test_executor_failure_marks_job_failed(self):
        self.queue.enqueue_start("run_1")

        def explode(job):
            raise LookupError("Run not found: run_1")

        job = self.queue.process_one_workflow_job(explode)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.error, "LookupError: Run not found: run_1")
        self.assertIsNotNone(job.finished_at)

    def test_job_running_while_executing(self):
        self.queue.enqueue_start("run_1")
        seen = {}

        def executor(job):
            seen["status"] = job.status
            seen["active"] = self.queue.active_job_for("run_1")

        job = self.queue.process_one_workflow_job(executor)
        self.assertEqual(seen["status"], JobStatus.RUNNING)
        self.assertIs(seen["active"], job)
        self.assertIsNone(self.queue.active_job_for("run_1"))


class TestInspection(unittest.TestCase):

    def test_status_counts(self):
        queue = WorkflowQueue(concurrency=4)
        queue.enqueue_start("run_1")
        queue.enqueue_start("run_2")
        queue.enqueue_start("run_3")
        queue.process_one_workflow_job(lambda j: None)

        def explode(job):
            raise RuntimeError("boom")

        queue.process_one_workflow_job(explode)
        self.assertEqual(queue.status(), {
            "queued": 1, "running": 0, "completed": 1, "failed": 1, "concurrency": 4,
        })

    def test_list_jobs_by_status(self):
        queue = WorkflowQueue()
        queue.enqueue_start("run_1")
        queue.enqueue_start("run_2")
        queue.process_one_workflow_job(lambda j: None)
        self.assertEqual([j.run_id for j in queue.list_jobs("queued")], ["run_2"])
        self.assertEqual([j.run_id for j in queue.list_jobs(JobStatus.COMPLETED)], ["run_1"])
        self.assertEqual(len(queue.list_jobs()), 2)
        self.assertEqual(len(queue.list_jobs(limit=1)), 1)

    def test_job_to_dict(self):
        queue = WorkflowQueue()
        job = queue.get_job(queue.enqueue_resume("run_1", {"city": "Paris"}))
        data = job.to_dict()
        self.assertEqual(data["type"], "workflow_resume")
        self.assertEqual(data["status"], "queued")
        self.assertEqual(data["payload"], {"user_response": {"city": "Paris"}})


if __name__ == "__main__":
    unittest.main()
