from __future__ import annotations

from importlib import resources

_PROMPT_CACHE: dict[str, str] = {}


def load_prompt(rel_path: str) -> str:
    if rel_path in _PROMPT_CACHE:
        return _PROMPT_CACHE[rel_path]
    content = resources.files(__package__).joinpath(rel_path).read_text(encoding="utf-8")
    _PROMPT_CACHE[rel_path] = content
    return content


def get_system_prompt(name: str, **values: str) -> str:
    """Load ``system/<name>.txt`` and fill ``{{key}}`` placeholders."""
    text = load_prompt(f"system/{name}.txt")
    for key, value in values.items():
        text = text.replace("{{" + key + "}}", value)
    return text.strip()
