"""
Static source screening.

Screening is a coarse deny-list applied to the raw text of a submission
before anything is provisioned.  A match rejects the whole submission;
matched text is never removed or rewritten.  Only toolchains flagged as
``screened`` in the registry are checked, every other language relies on
the sandbox alone.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Pattern, Sequence, Tuple

from ..errors import ForbiddenConstruct
from .registry import ToolchainDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rule:
    label: str
    pattern: Pattern[str]


def _rules(*pairs: Tuple[str, str]) -> Tuple[Rule, ...]:
    return tuple(Rule(label, re.compile(regex)) for label, regex in pairs)


# Module loading, process control, filesystem, network and dynamic evaluation.
DEFAULT_RULES: Mapping[str, Tuple[Rule, ...]] = MappingProxyType(
    {
        "javascript": _rules(
            ("require(", r"\brequire\s*\("),
            ("import ... from", r"\bimport\s+.*\bfrom\b"),
            ("import(", r"\bimport\s*\("),
            ("process.", r"\bprocess\s*\."),
            ("fs.", r"\bfs\s*\."),
            ("child_process", r"child_process"),
            ("eval(", r"\beval\s*\("),
            ("Function(", r"\bFunction\s*\("),
            ("setTimeout(", r"\bsetTimeout\s*\("),
            ("setInterval(", r"\bsetInterval\s*\("),
            ("fetch(", r"\bfetch\s*\("),
            ("XMLHttpRequest", r"\bXMLHttpRequest\b"),
            ("WebSocket", r"\bWebSocket\b"),
        ),
        "python": _rules(
            ("__import__", r"__import__"),
            ("importlib", r"\bimportlib\b"),
            ("import os", r"^\s*(?:import|from)\s+os\b"),
            ("import subprocess", r"^\s*(?:import|from)\s+subprocess\b"),
            ("import socket", r"^\s*(?:import|from)\s+socket\b"),
            ("import ctypes", r"^\s*(?:import|from)\s+ctypes\b"),
            ("import shutil", r"^\s*(?:import|from)\s+shutil\b"),
            # Builtins only; `re.compile(` and `df.eval(` are attribute calls.
            ("eval(", r"(?<![\w.])eval\s*\("),
            ("exec(", r"(?<![\w.])exec\s*\("),
            ("compile(", r"(?<![\w.])compile\s*\("),
        ),
        "ruby": _rules(
            ("system(", r"\bsystem\s*\("),
            ("exec(", r"\bexec\s*\("),
            ("backtick", r"`"),
            ("%x", r"%x[\(\[\{]"),
            ("eval", r"\beval\b"),
            ("require 'socket'", r"require\s+['\"]socket['\"]"),
        ),
        "php": _rules(
            ("shell_exec", r"\bshell_exec\s*\("),
            ("exec(", r"\bexec\s*\("),
            ("system(", r"\bsystem\s*\("),
            ("passthru", r"\bpassthru\s*\("),
            ("proc_open", r"\bproc_open\s*\("),
            ("popen", r"\bpopen\s*\("),
            ("eval(", r"\beval\s*\("),
            ("fsockopen", r"\bfsockopen\s*\("),
        ),
    }
)


class SourceSanitizer:
    """Reject submissions that contain a deny-listed construct."""

    def __init__(self, rules: Optional[Mapping[str, Sequence[Rule]]] = None) -> None:
        self._rules = MappingProxyType(dict(rules if rules is not None else DEFAULT_RULES))

    def rules_for(self, language: str) -> Sequence[Rule]:
        return self._rules.get(language, ())

    def screen(self, toolchain: ToolchainDescriptor, source: str) -> None:
        """Raise :class:`ForbiddenConstruct` on the first match.

        Toolchains that are not flagged ``screened`` pass unchecked.
        """
        if not toolchain.screened:
            return
        for lineno, line in enumerate(source.splitlines(), start=1):
            for rule in self.rules_for(toolchain.id):
                if rule.pattern.search(line):
                    logger.warning(
                        "Rejected %s submission: matched %r on line %d",
                        toolchain.id,
                        rule.label,
                        lineno,
                    )
                    raise ForbiddenConstruct(toolchain.id, rule.label, lineno)
