import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{name}</cyan> - <level>{message}</level>"
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


def _module_filter(modules: dict[str, str] | None):
    """Per-module minimum levels, e.g. {"agent_chat_client.events": "TRACE"}."""
    if not modules:
        return None
    thresholds = {name: logger.level(level.upper()).no for name, level in modules.items()}

    def accept(record: dict[str, Any]) -> bool:
        name = record["name"] or ""
        for prefix, minimum in thresholds.items():
            if name == prefix or name.startswith(prefix + "."):
                return record["level"].no >= minimum
        return True

    return accept


class ConsoleLogConsumer:
    # stderr, so log lines never land inside the transcript printed on stdout
    def __init__(self, colorize: bool | None = None, modules: dict[str, str] | None = None):
        self._colorize = colorize
        self._filter = _module_filter(modules)

    def register(self, level: str) -> int:
        return logger.add(
            sys.stderr,
            level=level,
            colorize=self._colorize,
            format=_CONSOLE_FORMAT,
            filter=self._filter,
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = "chat-client.log",
        rotation: str = "5 MB",
        retention: int = 3,
        serialize: bool = False,
        modules: dict[str, str] | None = None,
    ):
        self._path = Path(path)
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize
        self._filter = _module_filter(modules)

    def register(self, level: str) -> int:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            str(self._path),
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            filter=self._filter,
            encoding="utf-8",
        )

    def describe(self, level: str) -> str:
        kind = "json" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# Console only shows warnings so it does not interleave with streamed text.
_DEFAULT_CONSUMERS: list[dict[str, Any]] = [
    {"type": "console", "level": "WARNING"},
    {"type": "file", "path": "chat-client.log"},
]


def build_consumer(config: dict[str, Any]) -> LogConsumer | None:
    cls = _CONSUMER_TYPES.get(config.get("type", ""))
    if cls is None:
        return None
    options = {k: v for k, v in config.items() if k not in ("type", "level")}
    return cls(**options)


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's default sink with the configured consumers.

    ``consumers`` entries are ``{"type": ..., "level": ..., **options}``;
    an entry without a level uses ``level``. Returns one description per
    registered sink, for the startup banner.
    """
    logger.remove()

    descriptions: list[str] = []
    skipped: list[str] = []
    for config in _DEFAULT_CONSUMERS if consumers is None else consumers:
        consumer = build_consumer(config)
        if consumer is None:
            skipped.append(repr(config.get("type")))
            continue
        sink_level = str(config.get("level", level)).upper()
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    if skipped:
        logger.warning(f"Unknown log consumer type(s) ignored: {', '.join(skipped)}")
    return descriptions
