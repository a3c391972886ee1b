from security_operator.reconcilers.scan_job import ScanJobReconciler
from security_operator.reconcilers.workload import WorkloadReconciler

__all__ = ["ScanJobReconciler", "WorkloadReconciler"]
