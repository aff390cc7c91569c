"""Application bootstrap helpers for the DocBare query service."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

import uvicorn

from .services.query_api import create_app
from .services.settings import ContextSettings, Settings, SettingsStore, StreamingSettings, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)
_SECTIONS: Mapping[str, type] = {"streaming": StreamingSettings, "context": ContextSettings}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the service."""

    logging_utils.setup_logging(logging.DEBUG if debug else None, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(logging.getLogger().level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the ``docbare`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("DOCBARE_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("DOCBARE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
    if not settings.api_key:
        _LOGGER.warning("No API key configured; upstream requests will be rejected.")

    app = create_app(settings)
    _LOGGER.info("Starting DocBare on %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="docbare",
        description="Run the DocBare streaming query service or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.docbare/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable, e.g. streaming.loading_fallback_seconds=5).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    defaults = Settings()
    top_level = {item.name for item in fields(Settings)}
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        section, _, name = key.partition(".")
        if name:
            section_type = _SECTIONS.get(section)
            if section_type is None or name not in {item.name for item in fields(section_type)}:
                raise ValueError(f"Unknown setting '{key}'.")
            current = getattr(getattr(defaults, section), name)
        elif key in top_level and key not in _SECTIONS:
            current = getattr(defaults, key)
        else:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(current, raw_value.strip())
    return overrides


def _coerce_value(current: Any, raw_value: str) -> Any:
    lowered = raw_value.lower()
    if lowered in {"none", "null"}:
        return None
    if isinstance(current, bool):
        return _parse_bool(raw_value)
    if isinstance(current, int):
        return int(raw_value, 10)
    if isinstance(current, float):
        return float(raw_value)
    if isinstance(current, (dict, list)):
        try:
            return json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise ValueError("Mapping and list overrides must be valid JSON") from exc
    return raw_value


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean value, got '{value}'")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("DOCBARE_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    main()
