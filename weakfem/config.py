"""Environment-driven defaults for the parameter dataclasses."""
import os

_BACKENDS = ("direct", "gmres")


def default_assembly_workers() -> int:
    raw = os.getenv("WEAKFEM_ASSEMBLY_WORKERS", "1")
    try:
        workers = int(raw)
    except ValueError:
        raise ValueError(f"WEAKFEM_ASSEMBLY_WORKERS must be an integer, got {raw!r}")
    return max(1, workers)


def default_linear_backend() -> str:
    backend = os.getenv("WEAKFEM_LINEAR_BACKEND", "direct").strip().lower()
    if backend not in _BACKENDS:
        raise ValueError(f"WEAKFEM_LINEAR_BACKEND must be one of {_BACKENDS}, got {backend!r}")
    return backend
