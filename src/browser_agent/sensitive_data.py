"""Placeholder substitution for secrets.

The model only ever sees ``<secret>name</secret>`` tokens. Real values are put
back at dispatch time, scoped to the domain of the page the action runs on.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from .utils import match_url_with_domain_pattern

logger = logging.getLogger(__name__)

SensitiveData = Mapping[str, Union[str, Mapping[str, str]]]

SECRET_PATTERN = re.compile(r"<secret>(.*?)</secret>")


def placeholder(key: str) -> str:
    return f"<secret>{key}</secret>"


class SensitiveDataResolver:
    def __init__(self, sensitive_data: Optional[SensitiveData] = None) -> None:
        self._global: Dict[str, str] = {}
        self._scoped: Dict[str, Dict[str, str]] = {}
        for key, value in (sensitive_data or {}).items():
            if isinstance(value, Mapping):
                self._scoped[key] = {name: str(secret) for name, secret in value.items()}
            else:
                self._global[key] = str(value)

    def __bool__(self) -> bool:
        return bool(self._global or self._scoped)

    @property
    def domain_patterns(self) -> List[str]:
        return list(self._scoped)

    @property
    def has_unscoped_values(self) -> bool:
        return bool(self._global)

    def values_for_url(self, url: Optional[str]) -> Dict[str, str]:
        values = dict(self._global)
        if url:
            for pattern, secrets in self._scoped.items():
                if match_url_with_domain_pattern(url, pattern):
                    values.update(secrets)
        return values

    def placeholders_for_url(self, url: Optional[str] = None) -> Set[str]:
        """Placeholder names usable on ``url``; every name when ``url`` is None."""
        if url is None:
            names = set(self._global)
            for secrets in self._scoped.values():
                names.update(secrets)
            return names
        return set(self.values_for_url(url))

    def resolve(self, value: Any, url: Optional[str]) -> Any:
        """Replace placeholders in ``value`` (recursively through dicts and lists) with real values."""
        available = self.values_for_url(url)
        missing: Set[str] = set()

        def _replace(item: Any) -> Any:
            if isinstance(item, str):
                def _sub(match: re.Match) -> str:
                    name = match.group(1)
                    if name in available:
                        return available[name]
                    missing.add(name)
                    return match.group(0)

                return SECRET_PATTERN.sub(_sub, item)
            if isinstance(item, dict):
                return {key: _replace(sub) for key, sub in item.items()}
            if isinstance(item, list):
                return [_replace(sub) for sub in item]
            return item

        resolved = _replace(value)
        if missing:
            logger.warning("Missing or out-of-scope sensitive data keys for %s: %s", url, ", ".join(sorted(missing)))
        return resolved

    def mask(self, text: str) -> str:
        """Replace every known secret literal in ``text`` with its placeholder token."""
        if not text:
            return text
        keys: Dict[str, str] = {}
        for secrets in self._scoped.values():
            keys.update({secret: key for key, secret in secrets.items() if secret})
        keys.update({secret: key for key, secret in self._global.items() if secret})
        if not keys:
            return text
        # One pass, longest first, so inserted placeholders are never rescanned.
        pattern = re.compile("|".join(re.escape(secret) for secret in sorted(keys, key=len, reverse=True)))
        return pattern.sub(lambda match: placeholder(keys[match.group(0)]), text)
