"""portalctl: build plans and remote build/restore sessions for portal instances.

The command line entry point lives in :mod:`portalctl.cli`. The plan compiler
(:mod:`portalctl.plan`) and the sessions (:mod:`portalctl.sessions`) carry no
CLI assumptions and can be driven from other tooling.
"""
from __future__ import annotations

__all__ = ["__version__"]

# Kept in step with ``version`` in ``pyproject.toml``.
__version__ = "0.1.0a0"
