import asyncio
import structlog
from typing import Any, Coroutine, Dict, List

logger = structlog.get_logger()


class SyncJobManager:
    """
    Tracks detached semantic sync tasks.
    Singleton pattern ensures one registry per process.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(SyncJobManager, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._initialized = True
        # run_id -> { task, connection_id, status }
        self._active_jobs: Dict[str, Dict[str, Any]] = {}

        logger.info("SyncJobManager initialized")

    def submit_job(self, run_id: str, connection_id: str, coro: Coroutine) -> asyncio.Task:
        """
        Start a sync run in the background. Runs for the same connection are
        not serialized; each writes its own stages and the last writer wins
        on artifacts.
        """
        if self.running_for_connection(connection_id):
            logger.warning("Sync already running for connection", connection_id=connection_id, run_id=run_id)

        task = asyncio.create_task(coro)
        self._active_jobs[run_id] = {
            "task": task,
            "connection_id": connection_id,
            "status": "running",
        }

        def cleanup(f: asyncio.Task):
            try:
                result = f.result()
                status = result.get("status", "completed") if isinstance(result, dict) else "completed"
            except asyncio.CancelledError:
                logger.info("Sync job cancelled", run_id=run_id)
                status = "cancelled"
            except Exception as e:
                logger.error("Sync job crashed", run_id=run_id, error=str(e))
                status = "failed"
            # Finished jobs are dropped; the state store holds the durable status
            self._active_jobs.pop(run_id, None)
            logger.info("Sync job finished", run_id=run_id, status=status)

        task.add_done_callback(cleanup)
        logger.info("Sync job submitted", run_id=run_id, connection_id=connection_id)
        return task

    def running_for_connection(self, connection_id: str) -> List[str]:
        return [
            run_id for run_id, job in self._active_jobs.items()
            if job["connection_id"] == connection_id and job["status"] == "running"
        ]

    async def shutdown(self, timeout: float = 5.0):
        """Wait briefly for in-flight runs on shutdown."""
        tasks = [job["task"] for job in self._active_jobs.values()]
        if not tasks:
            return
        logger.info("Waiting for sync jobs", count=len(tasks))
        await asyncio.wait(tasks, timeout=timeout)


# Global instance
job_manager = SyncJobManager()
