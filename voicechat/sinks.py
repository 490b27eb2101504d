from loguru import logger


def alert(title: str, msg: str, log_file: str | None = None):
    """Surface a user-visible message; the console log is the alert of last resort."""
    logger.error(f"[ALERT] {title}: {msg}")
    if log_file:
        write_log(f"[ALERT] {title}: {msg}", log_file)


def write_log(text: str, log_file: str | None = None):
    """Write to a given file or fall back to loguru logger."""
    if log_file:
        try:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(text + "\n")
        except Exception as e:
            logger.warning(f"[write_log] failed to write file: {e}; falling back to logger")
            logger.info(text)
    else:
        logger.info(text)
