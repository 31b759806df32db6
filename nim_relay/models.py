from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple


# Ordered (needles, backend id) rules applied to the lowercased client model when no alias matches.
# The first rule with any matching needle wins.
DEFAULT_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("gpt-4",), "z-ai/glm5"),
    (("claude", "opus"), "meta/llama-3.1-405b-instruct"),
    (("deepseek",), "deepseek-ai/deepseek-v3.2"),
    (("glm",), "z-ai/glm4.7"),
)

_THINKING_SUFFIX = re.compile(r":(thinking|think|reason|reasoning)\s*$", flags=re.IGNORECASE)


def strip_thinking_suffix(model: Optional[str]) -> tuple[Optional[str], bool]:
    """Strip trailing ":thinking" (case-insensitive) from model id.

    Returns (new_model, enabled) where enabled indicates that thinking mode was requested.
    """
    if not model:
        return model, False
    s = str(model).strip()
    if _THINKING_SUFFIX.search(s):
        return _THINKING_SUFFIX.sub("", s), True
    return model, False


@dataclass(frozen=True)
class ResolvedModel:
    requested: str
    backend: str
    thinking: bool


class ModelResolver:
    def __init__(
        self,
        aliases: Mapping[str, str],
        default_model: str,
        rules: Sequence[Tuple[Sequence[str], str]] = DEFAULT_RULES,
    ) -> None:
        self._aliases: Dict[str, str] = dict(aliases)
        self._rules = tuple((tuple(n.lower() for n in needles), target) for needles, target in rules)
        self.default_model = default_model

    def resolve(self, client_model: str) -> str:
        # Aliases may map a name to itself, which passes valid backend ids straight through
        mapped = self._aliases.get(client_model)
        if mapped:
            return mapped
        s = (client_model or "").lower()
        for needles, target in self._rules:
            if any(n in s for n in needles):
                return target
        return self.default_model

    def resolve_request(self, client_model: str, thinking_default: bool = False) -> ResolvedModel:
        base, suffix_enabled = strip_thinking_suffix(client_model)
        # An alias keyed on the full name (suffix included) takes precedence
        if client_model in self._aliases:
            base = client_model
        return ResolvedModel(
            requested=client_model,
            backend=self.resolve(base or ""),
            thinking=bool(thinking_default or suffix_enabled),
        )

    def list_models(self) -> List[str]:
        return list(self._aliases.keys())
