from tradedesk.services.close_workflow import CloseAttempt, CloseWorkflow
from tradedesk.services.reconciliation_service import ReconciliationService

__all__ = [
    "CloseAttempt",
    "CloseWorkflow",
    "ReconciliationService",
]
