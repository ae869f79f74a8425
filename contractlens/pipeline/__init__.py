from contractlens.pipeline.orchestrator import (
    Confirmation,
    ScanOrchestrator,
    WorkerResult,
    discover_files,
)

__all__ = ["Confirmation", "ScanOrchestrator", "WorkerResult", "discover_files"]
