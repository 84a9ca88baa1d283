"""Runtime bootstrap and command-line entry point for the TaleLeaf AI governor."""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Sequence, TextIO, get_type_hints

from .ai.client import AnthropicTransport, OpenAITransport, ProviderTransport, ScriptedTransport
from .ai.generation import GenerationService
from .ai.orchestration.chunking import ContextChunker
from .ai.orchestration.governor import GovernorConfig, RequestGovernor
from .ai.orchestration.rate_limits import TokenBucketTracker
from .ai.providers import ProviderCatalog, default_catalog
from .services.credentials import CredentialRegistry
from .services.settings import SecretVault, Settings, SettingsStore, redact_secret
from .services.store import (
    RATE_LIMITS_RECORD,
    SETTINGS_RECORD,
    BackgroundWriter,
    JsonFileStore,
    KeyValueStore,
)
from .services.telemetry import TelemetryBus
from .utils import logging as logging_utils

__all__ = ["GovernorRuntime", "build_transports", "default_data_dir", "configure_logging", "main"]

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_DEFAULT_DATA_DIR = Path.home() / ".taleleaf" / "data"


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the governor."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s, file=%s)", logging.getLevelName(level), log_path)


def default_data_dir() -> Path:
    override = os.environ.get("TALELEAF_DATA_DIR")
    return Path(override).expanduser() if override else _DEFAULT_DATA_DIR


def build_transports(settings: Settings, *, offline: bool = False) -> Dict[str, ProviderTransport]:
    """Create one transport per provider family from the effective settings."""

    if offline:
        return {"openai": ScriptedTransport(family="openai"), "anthropic": ScriptedTransport(family="anthropic")}
    return {
        "openai": OpenAITransport(
            base_url=settings.openai_base_url,
            temperature=settings.temperature,
            max_tokens=settings.output_token_allowance,
            request_timeout=settings.request_timeout,
        ),
        "anthropic": AnthropicTransport(
            base_url=settings.anthropic_base_url,
            api_version=settings.anthropic_version,
            max_tokens=settings.output_token_allowance,
            temperature=settings.temperature,
            request_timeout=settings.request_timeout,
        ),
    }


@dataclass(slots=True)
class GovernorRuntime:
    """Explicitly constructed object graph behind the governor.

    Use :meth:`open` to build it and :meth:`aclose` (or ``async with``) to
    drain pending writes and release transports.
    """

    settings: Settings
    settings_store: SettingsStore
    store: KeyValueStore
    writer: BackgroundWriter
    catalog: ProviderCatalog
    credentials: CredentialRegistry
    tracker: TokenBucketTracker
    telemetry: TelemetryBus
    governor: RequestGovernor
    chunker: ContextChunker
    generation: GenerationService

    @classmethod
    def open(
        cls,
        data_dir: Path | str | None = None,
        *,
        store: KeyValueStore | None = None,
        vault: SecretVault | None = None,
        overrides: Mapping[str, Any] | None = None,
        transports: Mapping[str, ProviderTransport] | None = None,
        offline: bool = False,
        synchronous_writes: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> "GovernorRuntime":
        directory = Path(data_dir).expanduser() if data_dir is not None else default_data_dir()
        active_store: KeyValueStore = store if store is not None else JsonFileStore(directory)
        active_vault = vault or SecretVault(key_path=directory / "settings.key")
        settings_store = SettingsStore(active_store, vault=active_vault)
        settings = settings_store.load(overrides=overrides)

        writer = BackgroundWriter(active_store, synchronous=synchronous_writes)
        catalog = default_catalog()
        if settings.provider not in catalog:
            _LOGGER.warning("Configured provider %s is unknown; using the default", settings.provider)
            settings.provider = Settings().provider

        def _persist_credentials(payload: Mapping[str, Any]) -> None:
            writer.defer(SETTINGS_RECORD, settings_store.save_credentials, payload)

        credentials = CredentialRegistry(
            catalog,
            settings_store.load_credentials(),
            on_change=_persist_credentials,
            clock=clock,
        )
        tracker = TokenBucketTracker(
            catalog.bucket_defaults(),
            clock=clock,
            on_change=writer.writer_for(RATE_LIMITS_RECORD),
        )
        tracker.restore(active_store.get(RATE_LIMITS_RECORD))

        telemetry = TelemetryBus()
        active_transports = dict(transports) if transports is not None else build_transports(settings, offline=offline)
        governor = RequestGovernor(
            catalog,
            credentials,
            tracker,
            active_transports,
            config=GovernorConfig.from_settings(settings),
            telemetry=telemetry,
        )
        chunker = ContextChunker(governor.estimator)
        generation = GenerationService(governor, chunker=chunker, chunk_budget=settings.context_chunk_budget)
        _LOGGER.debug("Governor runtime opened (provider=%s)", settings.provider)
        return cls(
            settings=settings,
            settings_store=settings_store,
            store=active_store,
            writer=writer,
            catalog=catalog,
            credentials=credentials,
            tracker=tracker,
            telemetry=telemetry,
            governor=governor,
            chunker=chunker,
            generation=generation,
        )

    def flush(self, timeout: float | None = None) -> None:
        self.writer.flush(timeout)

    def close(self) -> None:
        """Drain queued writes without touching transports."""

        self.writer.close()

    async def aclose(self) -> None:
        try:
            await self.governor.aclose()
        finally:
            self.writer.close()

    async def __aenter__(self) -> "GovernorRuntime":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


# ----------------------------------------------------------------------
# Command line
# ----------------------------------------------------------------------
def main(argv: Sequence[str] | None = None, *, stdout: TextIO | None = None) -> int:
    """Entry point invoked by the ``taleleaf-governor`` console script."""

    out = stdout or sys.stdout
    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("TALELEAF_DEBUG")
    configure_logging(debug)

    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    runtime = GovernorRuntime.open(args.data_dir, overrides=overrides or None, offline=True)
    try:
        if runtime.settings.debug_logging and not debug:
            configure_logging(True, force=True)
        if args.dump_settings:
            _write_json(out, _settings_payload(runtime.settings))
            return 0
        handler = getattr(args, "handler", None)
        if handler is None:
            print("No command given; see --help.", file=sys.stderr)
            return 2
        return handler(runtime, args, out)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        runtime.close()


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="taleleaf-governor",
        description="Inspect and manage the TaleLeaf AI request governor.",
    )
    parser.add_argument("--data-dir", metavar="PATH", help="Override the ~/.taleleaf/data directory.")
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this invocation (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON.")
    commands = parser.add_subparsers(dest="command")

    providers = commands.add_parser("providers", help="List known AI providers.")
    providers.set_defaults(handler=_cmd_providers)

    credentials = commands.add_parser("credentials", help="Manage stored API keys.")
    credential_commands = credentials.add_subparsers(dest="credential_command", required=True)
    listing = credential_commands.add_parser("list", help="List stored credentials.")
    listing.add_argument("--provider", help="Only show credentials for this provider.")
    listing.set_defaults(handler=_cmd_credentials_list)
    add = credential_commands.add_parser("add", help="Store a new credential.")
    add.add_argument("provider")
    add.add_argument("name")
    add.add_argument("--secret", help="API key; prompted for when omitted.")
    add.add_argument("--inactive", action="store_true", help="Store the credential as inactive.")
    add.set_defaults(handler=_cmd_credentials_add)
    remove = credential_commands.add_parser("remove", help="Delete a credential.")
    remove.add_argument("credential_id")
    remove.set_defaults(handler=_cmd_credentials_remove)
    select = credential_commands.add_parser("select", help="Select the credential used for a provider.")
    select.add_argument("provider")
    select.add_argument("credential_id", nargs="?", help="Omit to clear the selection.")
    select.set_defaults(handler=_cmd_credentials_select)

    status = commands.add_parser("status", help="Show simulated rate-limit buckets.")
    status.add_argument("provider", nargs="?")
    status.set_defaults(handler=_cmd_status)

    estimate = commands.add_parser("estimate", help="Estimate tokens and cost for a prompt.")
    estimate.add_argument("provider")
    source = estimate.add_mutually_exclusive_group(required=True)
    source.add_argument("--text")
    source.add_argument("--file", type=Path)
    estimate.set_defaults(handler=_cmd_estimate)
    return parser.parse_args(argv)


def _cmd_providers(runtime: GovernorRuntime, args: argparse.Namespace, out: TextIO) -> int:
    rows = []
    for provider in runtime.catalog:
        credential = runtime.credentials.operational_credential(provider.id)
        rows.append(
            {
                "id": provider.id,
                "name": provider.name,
                "model": provider.model,
                "tokens_per_minute": provider.tokens_per_minute,
                "cost_estimate": provider.cost_estimate,
                "credential": credential.name if credential else None,
                "default": provider.id == runtime.settings.provider,
            }
        )
    if args.json:
        _write_json(out, rows)
        return 0
    for row in rows:
        marker = "*" if row["default"] else " "
        credential = row["credential"] or "no credential"
        out.write(
            f"{marker} {row['id']:<20} {row['name']:<26} {row['tokens_per_minute']:>8,} TPM  "
            f"{row['cost_estimate'] or '':<18} {credential}\n"
        )
    return 0


def _cmd_credentials_list(runtime: GovernorRuntime, args: argparse.Namespace, out: TextIO) -> int:
    rows = []
    for credential in runtime.credentials.credentials(args.provider):
        rows.append(
            {
                "id": credential.id,
                "provider_id": credential.provider_id,
                "name": credential.name,
                "secret": redact_secret(credential.secret),
                "status": credential.status,
                "selected": runtime.credentials.selection(credential.provider_id) == credential.id,
                "last_used_at": credential.last_used_at,
            }
        )
    if args.json:
        _write_json(out, rows)
        return 0
    if not rows:
        out.write("No credentials stored.\n")
    for row in rows:
        marker = "*" if row["selected"] else " "
        last_used = _format_timestamp(row["last_used_at"])
        out.write(
            f"{marker} {row['id']}  {row['provider_id']:<20} {row['name']:<20} "
            f"{row['secret']:<12} {row['status']:<8} last used {last_used}\n"
        )
    return 0


def _cmd_credentials_add(runtime: GovernorRuntime, args: argparse.Namespace, out: TextIO) -> int:
    secret = args.secret if args.secret is not None else getpass.getpass(f"API key for {args.provider}: ")
    credential = runtime.credentials.add(
        args.provider,
        args.name,
        secret,
        status="inactive" if args.inactive else "active",
    )
    out.write(f"Added credential {credential.id} for {credential.provider_id}\n")
    return 0


def _cmd_credentials_remove(runtime: GovernorRuntime, args: argparse.Namespace, out: TextIO) -> int:
    if not runtime.credentials.delete(args.credential_id):
        print(f"Credential {args.credential_id} not found", file=sys.stderr)
        return 1
    out.write(f"Removed credential {args.credential_id}\n")
    return 0


def _cmd_credentials_select(runtime: GovernorRuntime, args: argparse.Namespace, out: TextIO) -> int:
    runtime.credentials.select(args.provider, args.credential_id)
    if args.credential_id:
        out.write(f"Selected {args.credential_id} for {args.provider}\n")
    else:
        out.write(f"Cleared selection for {args.provider}\n")
    return 0


def _cmd_status(runtime: GovernorRuntime, args: argparse.Namespace, out: TextIO) -> int:
    provider_ids = [args.provider] if args.provider else [provider.id for provider in runtime.catalog]
    rows = []
    for provider_id in provider_ids:
        runtime.catalog.require(provider_id)
        bucket = runtime.tracker.status(provider_id)
        rows.append(
            {
                "provider_id": provider_id,
                "tracked": bucket is not None,
                "used": round(bucket.used, 1) if bucket else 0,
                "limit": bucket.limit if bucket else runtime.catalog.require(provider_id).tokens_per_minute,
                "available": round(bucket.available, 1) if bucket else None,
                "simulated": bucket.is_simulated if bucket else True,
                "retry_after": bucket.retry_after if bucket else None,
            }
        )
    if args.json:
        _write_json(out, rows)
        return 0
    for row in rows:
        if not row["tracked"]:
            out.write(f"{row['provider_id']:<20} untracked (limit {row['limit']:,} TPM)\n")
            continue
        source = "simulated" if row["simulated"] else "provider-confirmed"
        line = f"{row['provider_id']:<20} {row['used']:>10,.0f} / {row['limit']:,} used ({source})"
        if row["retry_after"]:
            line += f", retry in {row['retry_after']:.0f}s"
        out.write(line + "\n")
    return 0


def _cmd_estimate(runtime: GovernorRuntime, args: argparse.Namespace, out: TextIO) -> int:
    text = args.text if args.text is not None else args.file.read_text(encoding="utf-8")
    result = runtime.governor.can_admit_estimate(args.provider, text)
    payload = {
        **result.estimate.as_payload(),
        "allowed": result.decision.allowed,
        "reason": result.decision.reason,
        "wait_seconds": result.decision.wait_seconds,
    }
    if args.json:
        _write_json(out, payload)
        return 0
    estimate = result.estimate
    out.write(
        f"{estimate.provider_id}: ~{estimate.input_tokens:,} input + {estimate.estimated_output_tokens:,} output "
        f"= {estimate.total_tokens:,} tokens, ~${estimate.estimated_cost:.4f}\n"
    )
    if estimate.is_large:
        out.write("Warning: this is a large request.\n")
    if estimate.requires_confirmation:
        out.write("Cost exceeds the confirmation threshold.\n")
    if result.allowed:
        out.write("Admission: allowed\n")
    else:
        wait = f" (wait {result.decision.wait_seconds}s)" if result.decision.wait_seconds else ""
        out.write(f"Admission: denied{wait}: {result.decision.reason}\n")
    return 0


# ----------------------------------------------------------------------
# Internal helpers
# ----------------------------------------------------------------------
def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, str), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if annotation is bool:
        return _parse_bool(raw_value)
    if annotation is int:
        return int(raw_value, 10)
    if annotation is float:
        return float(raw_value)
    return raw_value


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean value, got '{value}'.")


def _settings_payload(settings: Settings) -> Dict[str, Any]:
    return asdict(settings)


def _format_timestamp(value: float | None) -> str:
    if not value:
        return "never"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(value))


def _write_json(out: TextIO, payload: Any) -> None:
    out.write(json.dumps(payload, indent=2, sort_keys=True))
    out.write("\n")
