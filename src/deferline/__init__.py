"""
deferline - Asynchronous Request Orchestration
================================================

deferline lets a slow or unreliable unit of work sit behind a
request/response interface. Each request is either executed inline (when
the caller will wait long enough) or queued for a Worker, and its outcome
is kept in a Request Record that callers re-poll by request-id:

    caller ──→ Dispatcher ──→ inline Processor ──┐
                   │                             ↓
                   └──→ Work Queue ──→ Worker ──→ Request Record
                   ↑                                 │
                   └────────── Waiter (polls) ───────┘

Quick Start:
    >>> from deferline import Deferline
    >>> async with Deferline(build_report) as app:
    ...     response = await app.handle(inbound, owner_id="user-123", payload=body)
"""

# =============================================================================
# Package Version
# =============================================================================
# Single source of truth for the package version, read by pyproject.toml:
#   from deferline import __version__
# =============================================================================
__version__ = "0.1.0"

# =============================================================================
# Package-Level Exports
# =============================================================================
# The Deferline facade is the main entry point. For specific components,
# import from submodules directly:
#   from deferline.core.config import DeferlineConfig
#   from deferline.orchestration.processor import Processor
# =============================================================================
from deferline.facade import Deferline

__all__ = ["Deferline", "__version__"]
