from __future__ import annotations

import logging
from functools import lru_cache

from lxml import etree

from locator_synthesis.core.models import MatchOutcome, XPathEvaluationResult

log = logging.getLogger(__name__)

MAX_SERIALIZED_NODES = 10
PRUNED_PLACEHOLDER = "[...]"


def evaluate_xpath(xml_text: str, expression: str) -> XPathEvaluationResult:
    """Evaluates one XPath expression against one XML document without raising."""

    if not expression or not expression.strip():
        return _failure(expression or "", "XPath expression is empty", is_valid=False)
    if not xml_text or not xml_text.strip():
        return _failure(expression, "XML source is empty", is_valid=False)

    try:
        tree = _parse_document(xml_text)
    except (etree.XMLSyntaxError, ValueError) as exc:
        log.warning("Could not parse XML source for %r: %s", expression, exc)
        return _failure(expression, f"XML parse error: {exc}", is_valid=False)

    try:
        matches = tree.xpath(expression)
    except etree.XPathError as exc:
        log.warning("Error evaluating XPath %r: %s", expression, exc)
        return _failure(expression, str(exc) or type(exc).__name__, is_valid=False)

    if not isinstance(matches, list):
        return _failure(
            expression,
            f"XPath evaluated to a {type(matches).__name__} instead of a node-set",
            is_valid=True,
        )

    nodes = [_serialize(node) for node in matches[:MAX_SERIALIZED_NODES]]
    if len(matches) > MAX_SERIALIZED_NODES:
        nodes.append(f"... and {len(matches) - MAX_SERIALIZED_NODES} more matches")
    return XPathEvaluationResult(
        xpath_expression=expression,
        number_of_matches=len(matches),
        matching_nodes=nodes,
        is_valid=True,
        success=MatchOutcome.SUCCESS,
    )


def simplify_xml(xml_text: str, max_depth: int = 10) -> str:
    """Replaces everything below max_depth with a placeholder; the root element is depth 0."""

    try:
        root = etree.fromstring(xml_text.encode("utf-8"), _parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        log.warning("Error simplifying XML, returning it unchanged: %s", exc)
        return xml_text
    _prune(root, 0, max_depth)
    return etree.tostring(root, encoding="unicode")


@lru_cache(maxsize=5)
def _parse_document(xml_text: str):
    root = etree.fromstring(xml_text.encode("utf-8"), _parser())
    return root.getroottree()


def _parser() -> etree.XMLParser:
    return etree.XMLParser(huge_tree=True, resolve_entities=False, no_network=True)


def _prune(node, depth: int, max_depth: int) -> None:
    if depth >= max_depth:
        for child in list(node):
            node.remove(child)
        node.text = PRUNED_PLACEHOLDER
        return
    for child in node:
        if isinstance(child.tag, str):
            _prune(child, depth + 1, max_depth)


def _serialize(node) -> str:
    if isinstance(node, etree._Element):
        try:
            return etree.tostring(node, encoding="unicode", with_tail=False)
        except (TypeError, ValueError) as exc:
            log.warning("Error serializing node: %s", exc)
            return "[Node serialization failed]"
    return str(node)


def _failure(expression: str, message: str, *, is_valid: bool) -> XPathEvaluationResult:
    return XPathEvaluationResult(
        xpath_expression=expression,
        number_of_matches=0,
        matching_nodes=[],
        is_valid=is_valid,
        success=MatchOutcome.FAILURE,
        error=message,
    )
