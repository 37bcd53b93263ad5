from dictum.scheduler.ap_scheduler import ReconcileScheduler, attach_reconcile

__all__ = ["ReconcileScheduler", "attach_reconcile"]
