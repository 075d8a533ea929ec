from __future__ import annotations

from .current_state import CurrentStateResource

__all__ = ["CurrentStateResource"]
