import json
import os

ROOT = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(ROOT, "config.json")

DEFAULT_CONFIG = {
    "api_base_url": "http://localhost:8000",
    "db_path": os.path.join(ROOT, "pos.sqlite"),
    # Applied to every call to the Remote Store, sync included.
    "http_timeout_seconds": 10,
    "sync_page_size": 100,
    "low_stock_threshold": 3,
    # Try the server first at checkout and fall back to the local path offline.
    "prefer_online_checkout": True,
}


def load_config(path: str = CONFIG_PATH) -> dict:
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow ops to override without rewriting the on-disk config.
    if os.environ.get("POS_API_BASE_URL"):
        cfg["api_base_url"] = os.environ["POS_API_BASE_URL"]
    if os.environ.get("POS_DB_PATH"):
        cfg["db_path"] = os.environ["POS_DB_PATH"]
    if os.environ.get("POS_HTTP_TIMEOUT"):
        try:
            cfg["http_timeout_seconds"] = float(os.environ["POS_HTTP_TIMEOUT"])
        except ValueError:
            pass
    return cfg


def save_config(data: dict, path: str = CONFIG_PATH) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
