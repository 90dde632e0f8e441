import html
import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lxml import etree

from .dialects import MEMOQ, MEMOQ_NS, Dialect, detect_dialect
from .errors import CodecError
from .logger import get_logger
from .models import FileMetadata, SegmentStatus, TranslationUnit

logger = get_logger(__name__)

# Native ids are written back only when they stay inside this charset
SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-\[\]/@#+]+$")

_TAG_BODY = r"(?:[^>\"']|\"[^\"]*\"|'[^']*')*"
_START_TAG = re.compile(rf"^<{_TAG_BODY}>")
_ATTRIBUTE = re.compile(r"""\s([\w:.\-]+)\s*=\s*("[^"]*"|'[^']*')""")


def _start_tag_pattern(local: str):
    return re.compile(rf"<(?P<prefix>[\w.\-]+:)?{local}(?=[\s/>]){_TAG_BODY}>")


_UNIT_START = _start_tag_pattern("trans-unit")
_SOURCE_START = _start_tag_pattern("source")
_TARGET_START = _start_tag_pattern("target")
_ALT_TRANS_START = _start_tag_pattern("alt-trans")


@dataclass
class ExtractedUnit:
    index: int
    external_id: str
    source_text: str
    translation: str
    status_hint: SegmentStatus
    format_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_unit(self, file_id: str) -> TranslationUnit:
        return TranslationUnit(
            file_id=file_id,
            index=self.index,
            external_id=self.external_id,
            source_text=self.source_text,
            translation=self.translation,
            status=self.status_hint,
            format_metadata=dict(self.format_metadata),
        )


def _local_name(node) -> str:
    if not isinstance(node.tag, str):
        return ""
    return etree.QName(node).localname


def _child(node, local: str):
    for child in node:
        if _local_name(child) == local:
            return child
    return None


def node_to_string(node) -> str:
    """
    Converts an lxml node's *children* to a string (inner XML).

    Namespace declarations inherited from the enclosing document are dropped so
    that the text stays readable; declarations an inline element introduces
    itself are kept verbatim.
    """
    if node is None:
        return ""

    parts = []
    if node.text:
        parts.append(html.escape(node.text, quote=False))
    inherited = node.nsmap
    for child in node:
        child_str = etree.tostring(child, encoding="unicode", with_tail=False)
        if isinstance(child.tag, str):
            own = {p: uri for p, uri in child.nsmap.items() if inherited.get(p) != uri}
            child_str = _strip_inherited_ns(child_str, inherited, own)
        parts.append(child_str)
        if child.tail:
            parts.append(html.escape(child.tail, quote=False))
    return "".join(parts)


def _strip_inherited_ns(markup: str, inherited: Dict, own: Dict) -> str:
    match = _START_TAG.match(markup)
    if not match:
        return markup
    start_tag = match.group(0)
    for prefix, uri in inherited.items():
        if own.get(prefix) == uri:
            continue
        attr = "xmlns" if prefix is None else f"xmlns:{prefix}"
        start_tag = re.sub(rf'\s+{re.escape(attr)}="{re.escape(html.escape(uri))}"', "", start_tag)
    return start_tag + markup[match.end():]


class BitextCodec:
    """
    Reads XLIFF 1.2 / MemoQ-XLIFF documents into translation units and writes
    reviewed text back, leaving every other node untouched.
    """

    def __init__(self):
        self.parser = etree.XMLParser(
            remove_blank_text=False,
            strip_cdata=False,
            resolve_entities=False,
            no_network=True,
        )

    def _parse(self, path: str):
        if not os.path.exists(path):
            raise CodecError(path, "file not found")
        try:
            with open(path, "rb") as f:
                raw = f.read()
            tree = etree.fromstring(raw, self.parser).getroottree()
        except (OSError, etree.XMLSyntaxError, ValueError) as e:
            raise CodecError(path, str(e)) from e
        return raw, tree

    @staticmethod
    def _trans_units(root) -> List:
        return root.xpath('//*[local-name()="trans-unit"]')

    def _dialect_for(self, root, trans_units) -> Dialect:
        dialect = detect_dialect(root)
        if dialect is not MEMOQ and any(etree.QName(tu).namespace == MEMOQ_NS for tu in trans_units):
            return MEMOQ
        return dialect

    def _native_state(self, dialect: Dialect, tu, target) -> Optional[str]:
        if dialect.unit_state_attribute and tu.get(dialect.unit_state_attribute):
            return tu.get(dialect.unit_state_attribute)
        return target.get("state") if target is not None else None

    def extract(self, path: str) -> Tuple[List[ExtractedUnit], FileMetadata]:
        """
        Extracts translation units in document order.

        Returns (units, file metadata). Units without an id or a <source> are
        skipped with a warning; indexes stay contiguous.
        """
        _, tree = self._parse(path)
        root = tree.getroot()
        trans_units = self._trans_units(root)
        dialect = self._dialect_for(root, trans_units)

        metadata = FileMetadata(dialect=dialect.name)
        files = root.xpath('//*[local-name()="file"]')
        if files:
            file_node = files[0]
            metadata.source_language = dialect.language_attribute(file_node, "source-language")
            metadata.target_language = dialect.language_attribute(file_node, "target-language")
            metadata.original_filename = file_node.get("original", "")
            metadata.datatype = file_node.get("datatype", "")

        units: List[ExtractedUnit] = []
        for tu in trans_units:
            tu_id = tu.get("id")
            source = _child(tu, "source")
            if not tu_id or source is None:
                logger.warning(f"Skipping trans-unit without id or source in {path} (id={tu_id!r})")
                continue

            target = _child(tu, "target")
            source_text = node_to_string(source)
            translation = node_to_string(target)
            native_state = self._native_state(dialect, tu, target)
            if not dialect.is_known_state(native_state):
                logger.warning(f"Unknown {dialect.name} state '{native_state}' on unit {tu_id}")

            has_target = target is not None and bool(translation.strip())
            if target is None:
                hint = SegmentStatus.PENDING
            else:
                hint = dialect.status_hint(native_state, has_target)
            units.append(ExtractedUnit(
                index=len(units),
                external_id=tu_id,
                source_text=source_text,
                translation=translation,
                status_hint=hint,
                format_metadata={
                    "dialect": dialect.name,
                    "native_state": native_state,
                    "had_target": target is not None,
                    "original_target": translation,
                    "status_hint": hint.value,
                    "has_inline_tags": len(source) > 0,
                },
            ))

        logger.info(f"Extracted {len(units)} units from {path} ({dialect.name})")
        return units, metadata

    def write(self, units: Iterable[TranslationUnit], original_path: str,
              output_path: Optional[str] = None) -> str:
        """
        Writes unit text back into a copy of the original document.

        Text priority is final text, then translation, then whatever the target
        already holds. Only the touched <target> elements and state attributes
        are rewritten in the original bytes; everything else is copied as is.
        The file is replaced atomically; on any error nothing is written.
        """
        output_path = output_path or original_path
        raw, tree = self._parse(original_path)
        root = tree.getroot()
        trans_units = self._trans_units(root)
        dialect = self._dialect_for(root, trans_units)

        by_id = {}
        for tu in trans_units:
            tu_id = tu.get("id")
            if tu_id and tu_id not in by_id:
                by_id[tu_id] = tu

        edits: Dict[str, _UnitEdit] = {}
        for unit in units:
            tu_id = unit.external_id
            if not tu_id or not SAFE_ID_PATTERN.match(tu_id):
                logger.warning(f"Skipping unit {unit.unit_id}: unsafe or empty native id {tu_id!r}")
                continue
            tu = by_id.get(tu_id)
            if tu is None:
                logger.warning(f"Skipping unit {unit.unit_id}: trans-unit '{tu_id}' not found in {original_path}")
                continue
            try:
                edit = self._plan_edit(tu, unit, dialect)
            except etree.XMLSyntaxError as e:
                raise CodecError(original_path, f"unit '{tu_id}' holds malformed markup: {e}") from e
            if edit is not None:
                edits[tu_id] = edit

        payload = raw
        if edits:
            payload = self._splice(raw, tree.docinfo.encoding or "UTF-8", edits, original_path)
        self._save(payload, output_path)
        logger.info(f"Wrote {len(edits)} updated units to {output_path}")
        return output_path

    def _plan_edit(self, tu, unit: TranslationUnit, dialect: Dialect) -> Optional["_UnitEdit"]:
        meta = unit.format_metadata or {}
        text = unit.final_text or unit.translation or None
        native = dialect.native_state(unit.status)

        unchanged_text = text is None or text == meta.get("original_target")
        unchanged_status = unit.status.value == meta.get("status_hint")
        if unchanged_text and (unchanged_status or native is None):
            return None

        target = _child(tu, "target")
        if target is None and text is None:
            return None
        if text is not None and target is not None and text == node_to_string(target):
            text = None
        if text is not None:
            self._check_fragment(tu if target is None else target, text)

        edit = _UnitEdit(text=text, native_state=native)
        if native and dialect.unit_state_attribute:
            qname = etree.QName(dialect.unit_state_attribute)
            prefix = next((p for p, uri in tu.nsmap.items() if p and uri == qname.namespace), None)
            edit.unit_state_attribute = f"{prefix or 'mq'}:{qname.localname}"
            if prefix is None:
                edit.declare_namespace = qname.namespace
        return edit

    def _check_fragment(self, context, text: str):
        declarations = " ".join(
            f'xmlns="{html.escape(uri)}"' if prefix is None else f'xmlns:{prefix}="{html.escape(uri)}"'
            for prefix, uri in context.nsmap.items()
        )
        # Parsed inside a dummy root carrying the context namespaces so prefixed inline tags resolve
        etree.fromstring(f"<dummy {declarations}>{text}</dummy>".encode("utf-8"), self.parser)

    def _splice(self, raw: bytes, encoding: str, edits: Dict[str, "_UnitEdit"], path: str) -> bytes:
        try:
            document = raw.decode(encoding)
        except (LookupError, ValueError) as e:
            raise CodecError(path, str(e)) from e

        replacements: List[Tuple[int, int, str]] = []
        seen = set()
        for start in _UNIT_START.finditer(document):
            span = _element_span(document, start, "trans-unit")
            if span is None:
                continue
            tu_id = _attribute_value(start.group(0), "id")
            if tu_id is None or tu_id in seen:
                continue
            seen.add(tu_id)
            edit = edits.get(tu_id)
            if edit is not None:
                replacements.extend(_unit_replacements(document, start, span, edit))

        missing = set(edits) - seen
        if missing:
            raise CodecError(path, f"could not locate trans-unit(s) {', '.join(sorted(missing))} in the document text")

        pieces, cursor = [], 0
        for begin, end, replacement in sorted(replacements):
            pieces.append(document[cursor:begin])
            pieces.append(replacement)
            cursor = end
        pieces.append(document[cursor:])
        return "".join(pieces).encode(encoding, errors="xmlcharrefreplace")

    @staticmethod
    def _save(payload: bytes, output_path: str):
        try:
            dir_name = os.path.dirname(os.path.abspath(output_path))
            with tempfile.NamedTemporaryFile(mode="wb", dir=dir_name, delete=False) as tf:
                temp_name = tf.name
                try:
                    tf.write(payload)
                except OSError:
                    tf.close()
                    os.remove(temp_name)
                    raise
            os.replace(temp_name, output_path)
        except OSError as e:
            raise CodecError(output_path, str(e)) from e


@dataclass
class _UnitEdit:
    text: Optional[str]
    native_state: Optional[str]
    # Prefixed name of the trans-unit state attribute, e.g. "mq:state"
    unit_state_attribute: Optional[str] = None
    declare_namespace: Optional[str] = None


def _element_span(document: str, start, local: str, endpos: Optional[int] = None) -> Optional[Tuple[int, int]]:
    """(content end, element end) for a matched start tag, or None when the end tag is missing."""
    if start.group(0).endswith("/>"):
        return start.end(), start.end()
    prefix = start.group("prefix") or ""
    closing = re.compile(rf"</{re.escape(prefix)}{local}\s*>")
    match = closing.search(document, start.end(), len(document) if endpos is None else endpos)
    if match is None:
        return None
    return match.start(), match.end()


def _attribute_value(start_tag: str, name: str) -> Optional[str]:
    for match in _ATTRIBUTE.finditer(start_tag):
        if match.group(1) == name:
            return html.unescape(match.group(2)[1:-1])
    return None


def _set_attribute(start_tag: str, name: str, value: str) -> str:
    escaped = html.escape(value)
    for match in _ATTRIBUTE.finditer(start_tag):
        if match.group(1) == name:
            quote = match.group(2)[0]
            return f"{start_tag[:match.start(2)]}{quote}{escaped}{quote}{start_tag[match.end(2):]}"
    closing = "/>" if start_tag.endswith("/>") else ">"
    return f'{start_tag[:-len(closing)].rstrip()} {name}="{escaped}"{closing}'


def _unit_replacements(document: str, start, span: Tuple[int, int], edit: _UnitEdit) -> List[Tuple[int, int, str]]:
    content_start, content_end = start.end(), span[0]
    replacements = []

    if edit.native_state and edit.unit_state_attribute:
        unit_tag = start.group(0)
        if edit.declare_namespace:
            prefix = edit.unit_state_attribute.split(":", 1)[0]
            unit_tag = _set_attribute(unit_tag, f"xmlns:{prefix}", edit.declare_namespace)
        unit_tag = _set_attribute(unit_tag, edit.unit_state_attribute, edit.native_state)
        replacements.append((start.start(), start.end(), unit_tag))

    # <target> elements of alt-trans candidates are not the unit's own target
    excluded = []
    for alt in _ALT_TRANS_START.finditer(document, content_start, content_end):
        alt_span = _element_span(document, alt, "alt-trans", content_end)
        excluded.append((alt.start(), alt_span[1] if alt_span else content_end))

    target = next(
        (m for m in _TARGET_START.finditer(document, content_start, content_end)
         if not any(begin <= m.start() < end for begin, end in excluded)),
        None,
    )

    if target is not None:
        target_span = _element_span(document, target, "target", content_end)
        if target_span is None:
            return replacements
        tag = target.group(0)
        if edit.native_state:
            tag = _set_attribute(tag, "state", edit.native_state)
        if edit.text is None and tag.endswith("/>"):
            replacements.append((target.start(), target.end(), tag))
            return replacements
        prefix = target.group("prefix") or ""
        inner = edit.text if edit.text is not None else document[target.end():target_span[0]]
        if tag.endswith("/>"):
            tag = tag[:-2].rstrip() + ">"
        replacements.append((target.start(), target_span[1], f"{tag}{inner}</{prefix}target>"))
        return replacements

    source = _SOURCE_START.search(document, content_start, content_end)
    source_span = _element_span(document, source, "source", content_end) if source else None
    if source_span is None or edit.text is None:
        return replacements
    prefix = source.group("prefix") or ""
    tail = re.match(r"\s*", document[source_span[1]:content_end]).group(0)
    state = f' state="{html.escape(edit.native_state)}"' if edit.native_state else ""
    replacements.append((
        source_span[1], source_span[1],
        f"{tail}<{prefix}target{state}>{edit.text}</{prefix}target>",
    ))
    return replacements
