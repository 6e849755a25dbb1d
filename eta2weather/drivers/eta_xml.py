"""Decoders for the ETA controller's REST payloads.

Both formats are fixed by the device firmware.

Menu (``GET /user/menu``), one node per line, nesting by indentation::

    <?xml version="1.0" encoding="utf-8"?>
    <eta version="1.0" xmlns="http://www.eta.co.at/rest/v1">
      <menu>
        <fub uri="/120/10101" name="Heizkreis">
          <object uri="/120/10101/0/0/12080" name="Ein/Aus Taste"/>

Variable (``GET /user/var/<path>``)::

    <eta version="1.0" xmlns="http://www.eta.co.at/rest/v1">
      <value uri="/user/var/120/10101/0/0/12240" strValue="50" unit="%"
             decPlaces="0" scaleFactor="10" advTextOffset="0">500</value>
    </eta>
"""
from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from ..core.errors import ParseError
from ..domain.models import TreeNode, VariableSample

_LEADING_WS = re.compile(r"^\s*")


def _attr(line: str, name: str) -> str:
    m = re.search(rf'(?<![\w-]){name}="([^"]+)"', line)
    return m.group(1) if m else ""


def _to_text(payload: Union[str, bytes]) -> str:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    payload = payload.lstrip("\ufeff")
    # drop whatever noise precedes the first tag
    start = payload.find("<")
    if start > 0:
        payload = payload[start:]
    return payload


@dataclass
class _Building:
    uri: str
    name: str
    children: List["_Building"] = field(default_factory=list)

    def freeze(self) -> TreeNode:
        return TreeNode(self.uri, self.name, tuple(c.freeze() for c in self.children))


def parse_menu(payload: Union[str, bytes]) -> List[TreeNode]:
    """Assemble the menu forest. A node closes when a line at the same or lower depth appears."""
    text = _to_text(payload)
    roots: List[_Building] = []
    stack: List[tuple[_Building, int]] = []

    for line in text.split("\n"):
        if not line.strip() or "<?xml" in line or "</eta>" in line or "<eta" in line:
            continue

        uri = _attr(line, "uri")
        name = _attr(line, "name")
        if not uri or not name:
            continue

        depth = len(_LEADING_WS.match(line).group(0))
        node = _Building(uri, name)

        while stack and stack[-1][1] >= depth:
            stack.pop()

        if stack:
            stack[-1][0].children.append(node)
        else:
            roots.append(node)
        stack.append((node, depth))

    return [r.freeze() for r in roots]


def collect_uris(nodes: List[TreeNode], leaves_only: bool = False) -> List[str]:
    """Every uri in the forest, depth first, without duplicates."""
    seen: dict[str, None] = {}

    def walk(node: TreeNode) -> None:
        if node.uri and not (leaves_only and node.children):
            seen.setdefault(node.uri, None)
        for child in node.children:
            walk(child)

    for n in nodes:
        walk(n)
    return list(seen)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _scaled(text: str, scale_factor: int, dec_places: int) -> Optional[float]:
    try:
        raw = float(text.strip())
    except ValueError:
        return None
    return round(raw / (scale_factor or 1), dec_places)


def parse_variable(payload: Union[str, bytes], path: str, captured_at: datetime) -> VariableSample:
    text = _to_text(payload)
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ParseError(f"Malformed variable XML for {path}: {e}") from e

    value_el = next((el for el in root.iter() if _local(el.tag) == "value"), None)
    if value_el is None:
        raise ParseError(f"No value element found in XML for {path}")

    attrs = {k: v for k, v in value_el.attrib.items()}
    try:
        scale_factor = int(attrs.get("scaleFactor", "1") or 1)
        dec_places = int(attrs.get("decPlaces", "0") or 0)
    except ValueError as e:
        raise ParseError(f"Bad scaleFactor/decPlaces for {path}: {e}") from e

    body = value_el.text or ""
    return VariableSample(
        path=path,
        raw_value=attrs.get("strValue", ""),
        scaled_value=_scaled(body, scale_factor, dec_places),
        unit=attrs.get("unit", ""),
        captured_at=captured_at,
        text=body,
        scale_factor=scale_factor,
        dec_places=dec_places,
        adv_text_offset=attrs.get("advTextOffset", "0"),
        attributes=attrs,
    )
