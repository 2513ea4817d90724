from functools import lru_cache
from pathlib import Path

import yaml

_KNOWLEDGE_DIR = Path(__file__).resolve().parents[1] / "knowledge"
_STORE_PATH = _KNOWLEDGE_DIR / "store.yaml"


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def load_store_knowledge() -> dict:
    """Static store facts handed to the model as grounding."""
    return _load_yaml(_STORE_PATH)


def get_store_name() -> str:
    store = load_store_knowledge().get("store")
    if isinstance(store, dict) and store.get("name"):
        return str(store["name"])
    return "la tienda"
