"""
KSA E-INVOICE — XMLDocument
Path-addressable wrapper around an lxml tree of a UBL 2.1 Invoice.

Paths are slash separated qualified names starting at the root, e.g.
``Invoice/cac:LegalMonetaryTotal``. Values written with ``set`` are plain
Python structures:

    {"cbc:TaxAmount": {"@currencyID": "SAR", "#text": "30.00"}}

- ``"prefix:Name"`` keys become child elements, in dict order
- ``"@attr"`` keys become attributes, ``"#text"`` the element text
- lists repeat the element, ``None`` values are skipped
"""

import logging
import re
from decimal import Decimal

from lxml import etree

from ksa_einvoice.zatca.errors import DocumentMutationError, ParseError

logger = logging.getLogger(__name__)

NSMAP = {
    None: "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
    "ext": "urn:oasis:names:specification:ubl:schema:xsd:CommonExtensionComponents-2",
    "sig": "urn:oasis:names:specification:ubl:schema:xsd:CommonSignatureComponents-2",
    "sac": "urn:oasis:names:specification:ubl:schema:xsd:SignatureAggregateComponents-2",
    "sbc": "urn:oasis:names:specification:ubl:schema:xsd:SignatureBasicComponents-2",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
    "xades": "http://uri.etsi.org/01903/v1.3.2#",
}

ROOT_TAG = "Invoice"

_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>\s*")


def _parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)


def _text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"{value:f}"
    return str(value)


class XMLDocument:
    """
    Mutable UBL Invoice document.

    Usage:
        doc = XMLDocument.parse(xml_text)
        doc.set("Invoice/cac:InvoiceLine", True, {"cbc:ID": "1"})
        text = doc.serialize()
    """

    def __init__(self, root: etree._Element, declaration: str = ""):
        self._root = root
        self._declaration = declaration

    @classmethod
    def parse(cls, text: str) -> "XMLDocument":
        """
        Parse invoice text.

        Raises:
            ParseError: text is empty, malformed, or not an Invoice document
        """
        if not text or not text.strip():
            raise ParseError("Invoice XML text is empty.")

        match = _DECLARATION.match(text)
        declaration = match.group(0) if match else ""
        body = text[match.end():] if match else text

        try:
            root = etree.fromstring(body.encode("utf-8"), parser=_parser())
        except etree.XMLSyntaxError as e:
            raise ParseError(f"Error parsing invoice XML string: {e}") from e

        if etree.QName(root).localname != ROOT_TAG:
            raise ParseError(
                f"Expected an '{ROOT_TAG}' document, got '{etree.QName(root).localname}'."
            )
        return cls(root, declaration)

    @property
    def root(self) -> etree._Element:
        return self._root

    # ── Paths ──

    def _qualify(self, name: str, path: str) -> str:
        prefix, _, local = name.rpartition(":")
        nsmap = {**NSMAP, **{k: v for k, v in self._root.nsmap.items()}}
        ns = nsmap.get(prefix or None)
        if prefix and ns is None:
            raise DocumentMutationError(f"Unknown namespace prefix '{prefix}' in path '{path}'.", path)
        return f"{{{ns}}}{local}" if ns else local

    def _split(self, path: str) -> list[str]:
        parts = [p for p in path.strip("/").split("/") if p]
        if not parts or parts[0].rpartition(":")[2] != etree.QName(self._root).localname:
            raise DocumentMutationError(f"Path '{path}' does not start at the document root.", path)
        return parts

    def _resolve(self, parts: list[str], path: str) -> list[etree._Element]:
        nodes = [self._root]
        for name in parts[1:]:
            tag = self._qualify(name, path)
            nodes = [child for node in nodes for child in node if child.tag == tag]
        return nodes

    def get(self, path: str) -> list[etree._Element]:
        """All elements at ``path`` (empty list when none)."""
        return self._resolve(self._split(path), path)

    def get_text(self, path: str) -> str | None:
        nodes = self.get(path)
        return nodes[0].text if nodes else None

    # ── Mutation ──

    def set(self, path: str, append: bool, value) -> None:
        """
        Write ``value`` at ``path``.

        append=True adds new element(s) after the last existing sibling with
        the same name (or at the end of the parent). append=False replaces every
        existing element with that name, keeping the position of the first one,
        or creates it at the end of the parent.

        Raises:
            DocumentMutationError: parent path missing or ambiguous
        """
        parts = self._split(path)
        if len(parts) < 2:
            raise DocumentMutationError("Cannot replace the document root.", path)

        parents = self._resolve(parts[:-1], path)
        if len(parents) != 1:
            raise DocumentMutationError(
                f"Path '{path}' needs exactly one parent element, found {len(parents)}.", path
            )
        parent = parents[0]
        tag = self._qualify(parts[-1], path)
        existing = [child for child in parent if child.tag == tag]

        # built at the end of the parent, then moved into place
        size = len(parent)
        try:
            new_elements = self._build(parent, tag, value, path)
        except DocumentMutationError:
            for partial in parent[size:]:
                parent.remove(partial)
            raise

        if existing and append:
            index = parent.index(existing[-1]) + 1
        elif existing:
            index = parent.index(existing[0])
            for old in existing:
                parent.remove(old)
        else:
            index = len(parent)

        for offset, element in enumerate(new_elements):
            parent.insert(index + offset, element)

        logger.debug(f"set {path} append={append}: {len(new_elements)} element(s)")

    def delete(self, path: str) -> int:
        """Remove every element at ``path``. Returns how many were removed."""
        parts = self._split(path)
        if len(parts) < 2:
            raise DocumentMutationError("Cannot delete the document root.", path)
        nodes = self._resolve(parts, path)
        for node in nodes:
            node.getparent().remove(node)
        return len(nodes)

    @staticmethod
    def _missing_namespace(parent: etree._Element, tag: str) -> dict | None:
        ns = etree.QName(tag).namespace
        if ns is None or ns in parent.nsmap.values():
            return None
        return {next(p for p, uri in NSMAP.items() if uri == ns): ns}

    def _build(self, parent: etree._Element, tag: str, value, path: str) -> list[etree._Element]:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [el for item in value for el in self._build(parent, tag, item, path)]

        element = etree.SubElement(parent, tag, nsmap=self._missing_namespace(parent, tag))
        if isinstance(value, dict):
            for key, child in value.items():
                if child is None:
                    continue
                if key.startswith("@"):
                    element.set(key[1:], _text(child))
                elif key == "#text":
                    element.text = _text(child)
                else:
                    self._build(element, self._qualify(key, path), child, path)
        else:
            element.text = _text(value)
        return [element]

    # ── Output ──

    def indent(self, space: str = "    ") -> None:
        """Re-indent the whole tree."""
        etree.indent(self._root, space=space)

    def serialize(self) -> str:
        return self._declaration + etree.tostring(self._root, encoding="unicode")

    def copy(self) -> "XMLDocument":
        return XMLDocument(etree.fromstring(etree.tostring(self._root), parser=_parser()), self._declaration)

    def __str__(self) -> str:
        return self.serialize()
