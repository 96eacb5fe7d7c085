# rule_scheduler/services/task_materializer.py
from datetime import datetime
import logging

from rule_scheduler.models.schemas import ResourceRequirements
from rule_scheduler.services.store import SchedulerStore

logger = logging.getLogger(__name__)


class TaskMaterializer:
    """Turns a committed prediction into a real task and returns its id"""

    async def commit(self, task_type: str, execution_time: datetime,
                     requirements: ResourceRequirements) -> str:
        raise NotImplementedError


class StoreTaskMaterializer(TaskMaterializer):
    """Queues predicted tasks as pending rows in the task table"""

    def __init__(self, store: SchedulerStore):
        self.store = store

    async def commit(self, task_type: str, execution_time: datetime,
                     requirements: ResourceRequirements) -> str:
        task_id = await self.store.add_task(
            task_type=task_type,
            status="pending",
            description=f"Predictive {task_type} task",
            scheduled_for=execution_time,
            metadata={
                "source": "predictive_scheduler",
                "resource_requirements": requirements.model_dump(mode="json"),
            }
        )
        logger.info(f"Materialized predicted {task_type} task {task_id} for {execution_time.isoformat()}")
        return task_id
