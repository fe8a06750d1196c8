from .main import SUPPORTED_KINDS, UnsupportedWorkerKind, run_worker_loop

__all__ = ["SUPPORTED_KINDS", "UnsupportedWorkerKind", "run_worker_loop"]
