"""CLI entrypoint for idem-guard."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from idem_guard import __version__
from idem_guard.controllers import (
    ConfigResolveCommand,
    ConfigSetCommand,
    ConfigToggleCommand,
    IdemGuardCliController,
    KeyGcCommand,
    KeyInspectCommand,
    KeyListCommand,
)
from idem_guard.errors import IdempotencyError
from idem_guard.models import KeyStrategy, RecordState, TargetKind

click.rich_click.USE_MARKDOWN = True
CONTROLLER = IdemGuardCliController()

_STATE_CHOICE = click.Choice([state.value for state in RecordState], case_sensitive=False)
_KIND_CHOICE = click.Choice([kind.value for kind in TargetKind], case_sensitive=False)
_STRATEGY_CHOICE = click.Choice(
    [strategy.value for strategy in KeyStrategy],
    case_sensitive=False,
)


@click.group()
@click.version_option(version=__version__, prog_name="idem-guard")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def idem_guard(verbose: bool) -> None:
    """Idempotency key store administration.

    Database location comes from `--db-path` or `IDEM_GUARD_DB_PATH`.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@idem_guard.group()
def keys() -> None:
    """Inspect and clean up idempotency records."""


@keys.command("inspect")
@click.argument("key")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def keys_inspect(key: str, db_path: Path | None) -> None:
    """Show one record and its audit history."""

    _emit_lines(lambda: CONTROLLER.inspect_key(KeyInspectCommand(db_path=db_path, key=key)))


@keys.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--state", type=_STATE_CHOICE, default=None, help="Only records in this state.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of records to print.",
)
def keys_list(db_path: Path | None, state: str | None, limit: int) -> None:
    """List most recent records."""

    _emit_lines(
        lambda: CONTROLLER.list_keys(
            KeyListCommand(
                db_path=db_path,
                state=state.upper() if state is not None else None,
                limit=limit,
            ),
        ),
    )


@keys.command("stale")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def keys_stale(db_path: Path | None) -> None:
    """List running records older than the stale timeout."""

    _emit_lines(lambda: CONTROLLER.list_stale(db_path))


@keys.command("gc")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--keep-audit",
    is_flag=True,
    help="Do not delete audit rows older than the retention window.",
)
def keys_gc(db_path: Path | None, keep_audit: bool) -> None:
    """Delete expired records and old audit rows."""

    _emit_lines(lambda: CONTROLLER.gc(KeyGcCommand(db_path=db_path, keep_audit=keep_audit)))


@idem_guard.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Show record counts by state and config summary."""

    _emit_lines(lambda: CONTROLLER.stats(db_path))


@idem_guard.group()
def config() -> None:
    """Manage per-target idempotency policy."""


@config.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", "target_kind", type=_KIND_CHOICE, default=None, help="Target kind.")
def config_list(db_path: Path | None, target_kind: str | None) -> None:
    """List persisted policy rows."""

    _emit_lines(
        lambda: CONTROLLER.list_configs(
            db_path,
            target_kind.upper() if target_kind is not None else None,
        ),
    )


@config.command("resolve")
@click.argument("target_kind", type=_KIND_CHOICE)
@click.argument("target_name")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def config_resolve(target_kind: str, target_name: str, db_path: Path | None) -> None:
    """Show the effective policy for a target."""

    _emit_lines(
        lambda: CONTROLLER.resolve_config(
            ConfigResolveCommand(
                db_path=db_path,
                target_kind=target_kind.upper(),
                target_name=target_name,
            ),
        ),
    )


@config.command("set")
@click.argument("config_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--kind", "target_kind", type=_KIND_CHOICE, required=True, help="Target kind.")
@click.option("--pattern", "target_pattern", required=True, help="Glob matched on target name.")
@click.option(
    "--ttl-seconds",
    type=click.IntRange(min=1),
    default=86_400,
    show_default=True,
    help="How long a key stays valid.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=3,
    show_default=True,
    help="Retries allowed after the first failed attempt.",
)
@click.option(
    "--key-strategy",
    type=_STRATEGY_CHOICE,
    default=KeyStrategy.AUTO.value,
    show_default=True,
    help="AUTO derives keys from content; CLIENT_PROVIDED requires a caller key.",
)
@click.option("--store-request/--no-store-request", default=True, show_default=True)
@click.option("--store-response/--no-store-response", default=True, show_default=True)
@click.option("--encrypt/--no-encrypt", default=False, show_default=True)
@click.option("--enabled/--disabled", default=True, show_default=True)
@click.option("--description", default=None, help="Free-form note.")
def config_set(  # noqa: PLR0913
    config_id: str,
    db_path: Path | None,
    target_kind: str,
    target_pattern: str,
    ttl_seconds: int,
    max_retries: int,
    key_strategy: str,
    store_request: bool,
    store_response: bool,
    encrypt: bool,
    enabled: bool,
    description: str | None,
) -> None:
    """Create or replace a policy row."""

    _emit_lines(
        lambda: CONTROLLER.set_config(
            ConfigSetCommand(
                db_path=db_path,
                config_id=config_id,
                target_kind=target_kind.upper(),
                target_pattern=target_pattern,
                ttl_seconds=ttl_seconds,
                max_retries=max_retries,
                key_strategy=key_strategy.upper(),
                store_request_payload=store_request,
                store_response_payload=store_response,
                encryption_required=encrypt,
                enabled=enabled,
                description=description,
            ),
        ),
    )


@config.command("enable")
@click.argument("config_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def config_enable(config_id: str, db_path: Path | None) -> None:
    """Enable idempotency for a policy row."""

    _emit_lines(
        lambda: CONTROLLER.toggle_config(
            ConfigToggleCommand(db_path=db_path, config_id=config_id, enabled=True),
        ),
    )


@config.command("disable")
@click.argument("config_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def config_disable(config_id: str, db_path: Path | None) -> None:
    """Disable idempotency for a policy row; matching targets run directly."""

    _emit_lines(
        lambda: CONTROLLER.toggle_config(
            ConfigToggleCommand(db_path=db_path, config_id=config_id, enabled=False),
        ),
    )


@config.command("seed-defaults")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--overwrite", is_flag=True, help="Replace existing default rows.")
def config_seed_defaults(db_path: Path | None, overwrite: bool) -> None:
    """Persist `DEFAULT_JOB` and `DEFAULT_API_ENDPOINT` rows from settings."""

    _emit_lines(lambda: CONTROLLER.seed_defaults(db_path, overwrite=overwrite))


def _emit_lines(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (IdempotencyError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    idem_guard()
