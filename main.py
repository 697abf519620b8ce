import asyncio
import json

from config import load_config, validate_config
from menus.player_menu import player_menu
from utils.logger import setup_logging, log_info, log_error


def main() -> int:
    setup_logging()

    try:
        config = load_config()
    except json.JSONDecodeError as e:
        log_error(f"Config file contains invalid JSON: {e}")
        return 1
    except Exception as e:
        log_error(f"Error loading config: {e}")
        return 1

    is_valid, errors = validate_config(config)
    if not is_valid:
        for error in errors:
            log_error(error)
        return 1

    setup_logging(config.get("log_level", "INFO"), config.get("log_file"))

    try:
        asyncio.run(player_menu(config))
    except KeyboardInterrupt:
        pass

    log_info("Exiting program...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
