import uvicorn

from gmail_relay.api import build_app
from gmail_relay.config_loader import load_settings
from gmail_relay.logger import configure_logging


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings["log_level"])
    app = build_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
