import hashlib
from typing import Any, Iterable, Optional

from concierge.services.data_tables import load_table


def stable_index(seed: str, size: int) -> int:
    if size <= 0:
        return 0
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return int(digest[:12], 16) % size


def choose_template(pool: list[str], recent: Iterable[str] = (), seed: str = "") -> str:
    """First template not used in the recent replies, else a stable pick."""
    if not pool:
        return ""
    recent = [text for text in recent if text]
    for candidate in pool:
        core = candidate.split("{", 1)[0].strip()
        if not any(core in text for text in recent):
            return candidate
    return pool[stable_index(seed, len(pool))]


class ResponseTemplates:
    """Lookup over the canned reply tables in ``knowledge/responses.yaml``."""

    def __init__(self, table: Optional[dict] = None, fallback_language: str = "en"):
        self.table = table if table is not None else load_table("responses")
        self.fallback_language = fallback_language

    def _node(self, path: tuple[str, ...]) -> Any:
        node: Any = self.table
        for key in path:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return node

    def has(self, *path: str) -> bool:
        return isinstance(self._node(path), dict)

    def pool(self, *path: str, language: str) -> list[str]:
        node = self._node(path)
        if not isinstance(node, dict):
            return []
        values = node.get(language)
        if values is None:
            values = node.get(self.fallback_language)
        if isinstance(values, str):
            return [values]
        return [value for value in values or [] if isinstance(value, str)]

    def text(self, *path: str, language: str) -> str:
        values = self.pool(*path, language=language)
        return values[0] if values else ""

    def choose(
        self,
        *path: str,
        language: str,
        recent: Iterable[str] = (),
        seed: str = "",
        **values: Any,
    ) -> str:
        template = choose_template(self.pool(*path, language=language), recent=recent, seed=seed)
        if values and template:
            try:
                return template.format(**values)
            except (KeyError, IndexError, ValueError):
                return template
        return template
