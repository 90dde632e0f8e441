"""
Native XLIFF dialects understood by the bitext codec.

Both dialects share the trans-unit/source/target structure of XLIFF 1.2 and
only differ in where the segment state lives and in its vocabulary.
"""
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .models import SegmentStatus

XLIFF_NS = "urn:oasis:names:tc:xliff:document:1.2"
MEMOQ_NS = "http://www.memoq.com/memoq/xliff"

# Pipeline status -> native state written back to the document
_NATIVE_STATES = {
    SegmentStatus.COMPLETED: "final",
    SegmentStatus.REVIEW_COMPLETED: "reviewed",
    SegmentStatus.TRANSLATED: "translated",
    SegmentStatus.TRANSLATED_TM: "translated",
    SegmentStatus.REVIEWING: "translated",
    SegmentStatus.REVIEW_PENDING: "translated",
    SegmentStatus.REVIEW_FAILED: "translated",
}


@dataclass(frozen=True)
class Dialect:
    name: str
    namespace: str
    # Qualified name of the state attribute carried by the trans-unit itself, if any
    unit_state_attribute: Optional[str] = None
    completed_states: Tuple[str, ...] = ("final", "signed-off")
    translated_states: Tuple[str, ...] = ("translated",)
    translated_prefixes: Tuple[str, ...] = ("needs-review",)
    language_namespaces: Tuple[Optional[str], ...] = field(default=(None,))

    def status_hint(self, native_state: Optional[str], has_target: bool) -> SegmentStatus:
        """Maps a native state to the shared status-hint vocabulary."""
        state = (native_state or "").strip().lower()
        if state in self.completed_states:
            return SegmentStatus.COMPLETED
        if state in self.translated_states or state.startswith(self.translated_prefixes):
            return SegmentStatus.TRANSLATED
        return SegmentStatus.TRANSLATED if has_target else SegmentStatus.PENDING

    def is_known_state(self, native_state: Optional[str]) -> bool:
        state = (native_state or "").strip().lower()
        return (
            not state
            or state in self.completed_states
            or state in self.translated_states
            or state.startswith(self.translated_prefixes)
            or state in KNOWN_OTHER_STATES
        )

    @staticmethod
    def native_state(status: SegmentStatus) -> Optional[str]:
        """Native state for a pipeline status, or None to leave the attribute alone."""
        return _NATIVE_STATES.get(status)

    def language_attribute(self, element, local_name: str) -> str:
        for ns in self.language_namespaces:
            key = local_name if ns is None else f"{{{ns}}}{local_name}"
            value = element.get(key)
            if value:
                return value
        return ""


KNOWN_OTHER_STATES = (
    "new",
    "needs-translation",
    "needs-adaptation",
    "needs-l10n",
    "reviewed",
)

STANDARD = Dialect(name="xliff", namespace=XLIFF_NS)

MEMOQ = Dialect(
    name="memoq",
    namespace=MEMOQ_NS,
    unit_state_attribute=f"{{{MEMOQ_NS}}}state",
    completed_states=("final", "signed-off", "proofread"),
    translated_states=("translated", "confirmed"),
    language_namespaces=(None, MEMOQ_NS),
)



def detect_dialect(root) -> Dialect:
    """MemoQ documents declare the MemoQ namespace on the root element."""
    if MEMOQ_NS in root.nsmap.values():
        return MEMOQ
    return STANDARD
