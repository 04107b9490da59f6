"""Air-gapped inference node deployer (Python-first, state-driven).

Core design goals:
- Offline-only: everything comes from a pre-built bundle
- Idempotent phases that converge on re-run
- Fail fast on the first fatal phase error, no partial success
- Best-effort OS hardening that never degrades the access path
- Centralized logging
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
