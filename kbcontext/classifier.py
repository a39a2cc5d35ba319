"""
Source-type classification for citations.

Each knowledge base registers an ordered list of TagRule entries. Rules are
evaluated centrally: the first rule that matches a candidate decides its
tag, otherwise the knowledge base's default tag is used.
"""

from __future__ import annotations

from typing import Dict, List

from kbcontext.models import Candidate, KnowledgeBase, TagRule


def _field_value(candidate: Candidate, field_name: str) -> str:
    value = candidate.metadata.get(field_name)
    if value is None:
        return ""
    return str(value).strip().lower()


def rule_matches(rule: TagRule, candidate: Candidate) -> bool:
    """True when the candidate satisfies the rule's field or namespace condition."""
    if rule.metadata_field and rule.values:
        value = _field_value(candidate, rule.metadata_field)
        if value and value in {v.strip().lower() for v in rule.values}:
            return True
    if rule.namespaces and candidate.namespace is not None:
        return candidate.namespace in rule.namespaces
    return False


def classify(candidate: Candidate, kb: KnowledgeBase) -> str:
    """Return the source-type tag for ``candidate`` found in ``kb``."""
    for rule in kb.tag_rules:
        if rule_matches(rule, candidate):
            return rule.tag
    return kb.tag


def tag_catalogue(bases: List[KnowledgeBase]) -> Dict[str, str]:
    """
    Every tag the registry can emit, mapped to a display name.

    Default tags come first in priority order; tags only reachable through
    rules use the rule's display name, falling back to the tag itself.
    """
    catalogue: Dict[str, str] = {}
    for kb in bases:
        catalogue.setdefault(kb.tag, kb.display_name)
    for kb in bases:
        for rule in kb.tag_rules:
            catalogue.setdefault(rule.tag, rule.display_name or rule.tag)
    return catalogue
