import json
import os
import logging
from dotenv import load_dotenv
from flask import Flask
from supabase import create_client
from mediatrack.repo import InMemoryRepo, SupabaseRepo
from mediatrack.web import Services, register_routes, register_error_handlers

DEFAULT_CFG = {
    "debug": True,
    "host": "127.0.0.1",
    "port": 5000,
    "logging_level": "INFO",
    "stale_time": 30,
    "query_retry": 1,
    "admin_workers": 8,
}

MISSING_BACKEND = "Supabase is not configured: set SUPABASE_URL and SUPABASE_ANON_KEY"

def load_config(path="config.json"):
    if not os.path.exists(path):
        print("config.json not found - using defaults:", DEFAULT_CFG)
        return DEFAULT_CFG.copy()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        print("Failed to read config.json:", e, " - using defaults")
        return DEFAULT_CFG.copy()
    merged = DEFAULT_CFG.copy()
    merged.update(cfg)
    return merged

load_dotenv()
cfg = load_config()

def configure_logging(level_name: str):
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # quieter werkzeug and http client when not debugging
    quiet = logging.WARNING if not cfg.get("debug") else logging.INFO
    logging.getLogger("werkzeug").setLevel(quiet)
    logging.getLogger("httpx").setLevel(logging.WARNING)

def build_repo():
    """Pick the data backend from the environment. Returns (repo, config_error)."""
    if os.environ.get("MEDIATRACK_BACKEND", "supabase").lower() == "memory":
        return InMemoryRepo(), None
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_ANON_KEY")
    if not url or not key:
        return None, MISSING_BACKEND
    return SupabaseRepo(create_client(url, key)), None

def create_app(repo=None):
    configure_logging(cfg.get("logging_level", "INFO"))
    logger = logging.getLogger(__name__)
    logger.info("Starting app with config: %s", cfg)

    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY", "dev-key")
    config_error = None
    if repo is None:
        repo, config_error = build_repo()
    if config_error:
        # keep serving so every endpoint can answer with the configuration problem
        logger.error(config_error)
        app.config["CONFIG_ERROR"] = config_error
    services = Services.build(
        repo,
        stale_time=float(cfg.get("stale_time", 30)),
        retry=int(cfg.get("query_retry", 1)),
        admin_workers=int(cfg.get("admin_workers", 8)),
    )
    app.config["SERVICE"] = services

    register_routes(app, services)
    register_error_handlers(app)
    return app

if __name__ == "__main__":
    app = create_app()
    app.run(host=cfg.get("host", "127.0.0.1"), port=cfg.get("port", 5000), debug=cfg.get("debug", True))
