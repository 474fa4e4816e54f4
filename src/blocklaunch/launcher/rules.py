from __future__ import annotations

import sys
from typing import Iterable

from blocklaunch.common.types import DownloadSpec, LibraryEntry, Rule


WINDOWS = "windows"
OSX = "osx"
LINUX = "linux"

ALLOW = "allow"
DISALLOW = "disallow"


def current_platform() -> str:
    if sys.platform.startswith("win"):
        return WINDOWS
    if sys.platform == "darwin":
        return OSX
    return LINUX


def current_arch_bits() -> str:
    return "64" if sys.maxsize > 2**32 else "32"


def rule_matches(rule: Rule, platform_name: str) -> bool:
    return rule.os_name is None or rule.os_name == platform_name


def applies(entry: LibraryEntry | Iterable[Rule], platform_name: str) -> bool:
    """Decide whether a library (or a bare rule list) is used on ``platform_name``.

    No rules means the entry always applies. Otherwise every matching rule
    overwrites the decision in declaration order, so the last match wins, and
    an entry no rule matches is excluded.
    """
    rules = entry.rules if isinstance(entry, LibraryEntry) else tuple(entry)
    if not rules:
        return True
    decision = DISALLOW
    for rule in rules:
        if rule_matches(rule, platform_name):
            decision = rule.action
    return decision == ALLOW


def native_artifact(entry: LibraryEntry, platform_name: str) -> DownloadSpec | None:
    if not entry.natives:
        return None
    return entry.natives.get(platform_name)


def resolve_classifier_key(classifier: str, arch_bits: str | None = None) -> str:
    return classifier.replace("${arch}", arch_bits or current_arch_bits())
