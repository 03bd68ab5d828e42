import logging, json, sys, time, os

BASE_LOGGER = "narrowssh"


def _attach_handlers(logger, to_file=None):
    # stderr: stdout is reserved for command output
    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        fmt=json.dumps({
            "ts": "%(asctime)s",
            "level": "%(levelname)s",
            "name": "%(name)s",
            "msg": "%(message)s"
        }),
        datefmt="%Y-%m-%dT%H:%M:%SZ",
    )
    formatter.converter = time.gmtime  # Use UTC timestamps
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    if to_file:
        os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
        file_handler = logging.FileHandler(to_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def _env_level():
    # unknown names fall back to the default instead of failing at import
    level = os.getenv("NARROWSSH_LOG_LEVEL", "WARNING").strip().upper()
    return level if isinstance(logging.getLevelName(level), int) else "WARNING"


def get_logger(name=BASE_LOGGER, level=None, to_file=None):
    """
    Unified structured logger for all narrowssh components.

    Handlers live on the "narrowssh" logger only; component loggers such as
    "narrowssh.registry" propagate to it and follow its level unless given
    one of their own. The base level comes from NARROWSSH_LOG_LEVEL.
    """
    base = logging.getLogger(BASE_LOGGER)
    if not base.handlers:
        base.setLevel(_env_level())
        _attach_handlers(base, to_file)

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger
