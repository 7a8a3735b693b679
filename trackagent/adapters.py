"""Capability-checked patching of host attributes the agent does not own."""

import logging
from typing import Callable

logger = logging.getLogger(__name__)

PATCHED_MARKER = "__trackagent_patched__"


class PatchAdapter:
    """Replaces ``owner.attribute`` with a factory-built replacement, and can put it back.

    The patch is skipped when the attribute is missing, not callable, or
    already carries the agent's marker, so the host is never assumed to
    provide the surface.
    """

    def __init__(self, owner, attribute: str):
        self.owner = owner
        self.attribute = attribute
        self._original = None
        self._patched = False

    @property
    def name(self) -> str:
        owner = getattr(self.owner, "__name__", type(self.owner).__name__)
        return f"{owner}.{self.attribute}"

    @property
    def patched(self) -> bool:
        return self._patched

    def can_patch(self) -> bool:
        try:
            current = getattr(self.owner, self.attribute, None)
            return callable(current) and getattr(current, PATCHED_MARKER, False) is not True
        except Exception:
            return False

    def patch(self, factory: Callable) -> bool:
        """Install ``factory(original)`` in place of the original. Returns False if skipped."""
        if not self.can_patch():
            logger.debug("Skipping %s: not patchable", self.name)
            return False
        original = getattr(self.owner, self.attribute)
        replacement = factory(original)
        setattr(replacement, PATCHED_MARKER, True)
        setattr(self.owner, self.attribute, replacement)
        self._original = original
        self._patched = True
        logger.debug("Patched %s", self.name)
        return True

    def restore(self):
        if not self._patched:
            return
        setattr(self.owner, self.attribute, self._original)
        self._original = None
        self._patched = False
        logger.debug("Restored %s", self.name)
