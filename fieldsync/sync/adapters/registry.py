from typing import List

from .base import EntitySyncAdapter
from .checklists import ChecklistAnswerSyncAdapter, ChecklistInstanceSyncAdapter, ChecklistTemplateSyncAdapter
from .clients import ClientSyncAdapter
from .quotes import QuoteSyncAdapter
from .work_orders import WorkOrderSyncAdapter


def default_adapters() -> List[EntitySyncAdapter]:
    """Every entity the client keeps offline, in push-priority order."""
    adapters: List[EntitySyncAdapter] = [
        ClientSyncAdapter(),
        QuoteSyncAdapter(),
        WorkOrderSyncAdapter(),
        ChecklistTemplateSyncAdapter(),
        ChecklistInstanceSyncAdapter(),
        ChecklistAnswerSyncAdapter(),
    ]
    return sorted(adapters, key=lambda a: a.push_priority)
