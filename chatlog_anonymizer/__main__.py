from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from .config import Settings
from .logging_setup import configure_logging
from .server import create_app
from .worker import Worker


def main():
    # .env at the project root, if present
    load_dotenv(dotenv_path=Path(__file__).parent.parent / ".env")
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    app = create_app(Worker(settings))
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
