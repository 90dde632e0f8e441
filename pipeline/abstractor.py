import html
import re
from typing import Dict, List
from dataclasses import dataclass
from lxml import etree

PLACEHOLDER_PATTERN = re.compile(r"\{(\d+)\}")
TAG_PATTERN = re.compile(r"</?[A-Za-z_][^>]*>")


@dataclass
class AbstractionResult:
    abstracted_text: str
    tags_map: Dict[str, str]


class TagAbstractor:
    """
    Handles the conversion between inner XML of a segment and AI-friendly
    plain text where every inline element is replaced by {1}, {2}, ...
    """

    def abstract(self, raw_xml: str) -> AbstractionResult:
        """
        Replaces inline elements with numbered placeholders.
        Text between them is returned unescaped.
        """
        if not raw_xml:
            return AbstractionResult("", {})

        parser = etree.XMLParser(recover=False, remove_blank_text=False, resolve_entities=False)
        try:
            dummy_root = etree.fromstring(f"<dummy>{raw_xml}</dummy>".encode("utf-8"), parser)
        except etree.XMLSyntaxError:
            # e.g. prefixed inline tags whose namespace lives on an ancestor
            return self._abstract_by_regex(raw_xml)

        tags_map: Dict[str, str] = {}
        out = []
        if dummy_root.text:
            out.append(dummy_root.text)

        for counter, node in enumerate(dummy_root, start=1):
            key = str(counter)
            tags_map[key] = etree.tostring(node, encoding="unicode", with_tail=False)
            out.append(f"{{{key}}}")
            if node.tail:
                out.append(node.tail)

        return AbstractionResult("".join(out), tags_map)

    def _abstract_by_regex(self, raw_xml: str) -> AbstractionResult:
        tags_map: Dict[str, str] = {}
        out = []
        last = 0
        for counter, match in enumerate(TAG_PATTERN.finditer(raw_xml), start=1):
            out.append(html.unescape(raw_xml[last:match.start()]))
            tags_map[str(counter)] = match.group(0)
            out.append(f"{{{counter}}}")
            last = match.end()
        out.append(html.unescape(raw_xml[last:]))
        return AbstractionResult("".join(out), tags_map)

    def reconstruct(self, abstracted_text: str, tags_map: Dict[str, str]) -> str:
        """
        Replaces {n} placeholders back with their original tags and escapes the
        text around them, so the result is valid inner XML again.
        """
        parts = []
        last = 0
        for match in PLACEHOLDER_PATTERN.finditer(abstracted_text):
            parts.append(html.escape(abstracted_text[last:match.start()], quote=False))
            key = match.group(1)
            # Unknown {n} is literal text
            parts.append(tags_map.get(key, html.escape(match.group(0), quote=False)))
            last = match.end()
        parts.append(html.escape(abstracted_text[last:], quote=False))
        return "".join(parts)

    @staticmethod
    def missing_placeholders(abstracted_text: str, tags_map: Dict[str, str]) -> List[str]:
        found = set(PLACEHOLDER_PATTERN.findall(abstracted_text))
        return [f"{{{key}}}" for key in sorted(tags_map, key=int) if key not in found]
