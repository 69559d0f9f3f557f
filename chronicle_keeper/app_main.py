import os
import shutil

from dotenv import load_dotenv

from .config_service import ConfigService
from .logger_factory import configure_logging, get_logger


def _seed_from_example(target: str, example: str) -> None:
    if not os.path.exists(target) and os.path.exists(example):
        try:
            shutil.copyfile(example, target)
        except OSError:
            pass


def main() -> None:
    _seed_from_example(".env", ".env.example")
    load_dotenv()
    _seed_from_example("config.yaml", "config.example.yaml")

    config = ConfigService("config.yaml")
    configure_logging(
        level=config.log_level(),
        tz=config.log_tz(),
        lib_log_level=config.lib_log_level(),
        console_to_file=config.log_console(),
        error_file=config.log_errors(),
    )
    logger = get_logger("app_main")

    from .http_app import create_app
    import uvicorn

    app = create_app(config)
    host = config.html_host()
    port = config.html_port()
    logger.info(f"Web server: http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
