from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from sponsorcrm.domain.rules import MAX_REMINDERS
from sponsorcrm.domain.stages import SigningProviderKind

WORKSPACES_DIR = Path("workspaces")
CURRENT_WORKSPACE_FILE = WORKSPACES_DIR / ".current"
WORKSPACE_FILENAME = "workspace.yaml"

CRON_SECRET_ENV = "CRON_SECRET"
ESIGN_ACCESS_TOKEN_ENV = "ESIGN_ACCESS_TOKEN"
ESIGN_WEBHOOK_CLIENT_ID_ENV = "ESIGN_WEBHOOK_CLIENT_ID"


@dataclass(frozen=True)
class StoreConfig:
    sqlite_path: Path


@dataclass(frozen=True)
class ExternalSigningConfig:
    api_base_url: str
    provider_name: str = "Adobe Sign"


@dataclass(frozen=True)
class SigningConfig:
    default_provider: str = SigningProviderKind.SELF_HOSTED.value
    portal_base_url: str = "http://localhost:3000"
    provider_name: str = "Verified Document Signing"
    external: ExternalSigningConfig | None = None


@dataclass(frozen=True)
class EmailConfig:
    from_address: str
    outbox_path: Path
    sender_name: str | None = None


@dataclass(frozen=True)
class ReminderConfig:
    threshold_days: int = 5
    max_reminders: int = MAX_REMINDERS


@dataclass(frozen=True)
class WorkspaceConfig:
    name: str
    store: StoreConfig
    email: EmailConfig
    path: Path
    signing: SigningConfig = field(default_factory=SigningConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)


class WorkspaceError(RuntimeError):
    pass


def ensure_workspaces_dir() -> None:
    WORKSPACES_DIR.mkdir(parents=True, exist_ok=True)


def set_current_workspace(name: str) -> None:
    ensure_workspaces_dir()
    CURRENT_WORKSPACE_FILE.write_text(f"{name}\n", encoding="utf-8")


def get_current_workspace_name() -> str:
    if not CURRENT_WORKSPACE_FILE.exists():
        raise WorkspaceError("No active workspace. Run `sponsorcrm workspace use <name>`.")
    return CURRENT_WORKSPACE_FILE.read_text(encoding="utf-8").strip()


def workspace_path(name: str) -> Path:
    return WORKSPACES_DIR / name


def workspace_config_path(name: str) -> Path:
    return workspace_path(name) / WORKSPACE_FILENAME


def load_workspace(name: str | None = None) -> WorkspaceConfig:
    if name is None:
        name = get_current_workspace_name()
    return load_workspace_file(workspace_config_path(name), name)


def load_workspace_file(config_path: Path, name: str | None = None) -> WorkspaceConfig:
    if not config_path.exists():
        raise WorkspaceError(f"Workspace config not found: {config_path}")
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise WorkspaceError("Workspace config must be a mapping.")
    return WorkspaceConfig(
        name=name or data.get("workspace") or config_path.parent.name,
        store=_parse_store(data.get("store"), config_path),
        email=_parse_email(data.get("email"), config_path),
        signing=_parse_signing(data.get("signing")),
        reminders=_parse_reminders(data.get("reminders")),
        path=config_path.parent,
    )


def write_workspace_config(
    name: str,
    from_address: str,
    portal_base_url: str = "http://localhost:3000",
    external_api_base_url: str | None = None,
) -> Path:
    ensure_workspaces_dir()
    ws_dir = workspace_path(name)
    ws_dir.mkdir(parents=True, exist_ok=True)
    config: dict[str, Any] = {
        "workspace": name,
        "store": {"sqlite_path": "./local.sqlite"},
        "signing": {
            "default_provider": SigningProviderKind.SELF_HOSTED.value,
            "portal_base_url": portal_base_url,
        },
        "email": {"from_address": from_address, "outbox_path": "./outbox.jsonl"},
        "reminders": {"threshold_days": 5, "max_reminders": MAX_REMINDERS},
    }
    if external_api_base_url:
        config["signing"]["external"] = {"api_base_url": external_api_base_url}
    config_path = workspace_config_path(name)
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return config_path


def env_secret(name: str) -> str | None:
    """Secrets come from the environment, never from workspace YAML; empty counts as unset."""
    value = os.environ.get(name)
    return value or None


def _parse_store(store_data: Any, config_path: Path) -> StoreConfig:
    if not isinstance(store_data, dict):
        raise WorkspaceError("Invalid workspace store configuration.")
    sqlite_path_raw = store_data.get("sqlite_path")
    if not sqlite_path_raw:
        raise WorkspaceError("Workspace store.sqlite_path is required.")
    sqlite_path = _resolve_path(sqlite_path_raw, config_path)
    if sqlite_path is None:
        raise WorkspaceError("Workspace store.sqlite_path must be a string.")
    return StoreConfig(sqlite_path=sqlite_path)


def _resolve_path(raw: Any, config_path: Path) -> Path | None:
    if not isinstance(raw, str):
        return None
    raw_path = Path(raw)
    if raw_path.is_absolute():
        return raw_path
    workspace_dir = config_path.parent
    if raw_path.parts and raw_path.parts[0] == WORKSPACES_DIR.name:
        # Paths written from the repo root already start with "workspaces/".
        return (workspace_dir.parent.parent / raw_path).resolve()
    return (workspace_dir / raw_path).resolve()


def _parse_email(email_data: Any, config_path: Path) -> EmailConfig:
    if not isinstance(email_data, dict):
        raise WorkspaceError("Invalid workspace email configuration.")
    from_address = email_data.get("from_address")
    if not from_address:
        raise WorkspaceError("Workspace email.from_address is required.")
    outbox_path = _resolve_path(email_data.get("outbox_path") or "./outbox.jsonl", config_path)
    if outbox_path is None:
        raise WorkspaceError("Workspace email.outbox_path must be a string.")
    return EmailConfig(
        from_address=from_address,
        outbox_path=outbox_path,
        sender_name=email_data.get("sender_name"),
    )


def _parse_signing(signing_data: Any) -> SigningConfig:
    if signing_data is None:
        return SigningConfig()
    if not isinstance(signing_data, dict):
        raise WorkspaceError("Invalid workspace signing configuration.")
    default_provider = signing_data.get("default_provider") or SigningProviderKind.SELF_HOSTED.value
    if default_provider not in {kind.value for kind in SigningProviderKind}:
        raise WorkspaceError(f"Unknown signing provider: {default_provider}")

    external = None
    external_data = signing_data.get("external")
    if external_data is not None:
        if not isinstance(external_data, dict) or not external_data.get("api_base_url"):
            raise WorkspaceError("Workspace signing.external.api_base_url is required.")
        external = ExternalSigningConfig(
            api_base_url=external_data["api_base_url"],
            provider_name=external_data.get("provider_name") or "Adobe Sign",
        )
    if default_provider == SigningProviderKind.EXTERNAL.value and external is None:
        raise WorkspaceError("External signing is the default but signing.external is missing.")

    defaults = SigningConfig()
    return SigningConfig(
        default_provider=default_provider,
        portal_base_url=signing_data.get("portal_base_url") or defaults.portal_base_url,
        provider_name=signing_data.get("provider_name") or defaults.provider_name,
        external=external,
    )


def _parse_reminders(reminder_data: Any) -> ReminderConfig:
    if reminder_data is None:
        return ReminderConfig()
    if not isinstance(reminder_data, dict):
        raise WorkspaceError("Invalid workspace reminders configuration.")
    defaults = ReminderConfig()
    try:
        threshold = int(reminder_data.get("threshold_days", defaults.threshold_days))
        maximum = int(reminder_data.get("max_reminders", defaults.max_reminders))
    except (TypeError, ValueError) as exc:
        raise WorkspaceError("Workspace reminders values must be integers.") from exc
    if threshold < 0 or maximum < 0:
        raise WorkspaceError("Workspace reminders values must not be negative.")
    if maximum > MAX_REMINDERS:
        raise WorkspaceError(f"Workspace reminders.max_reminders cannot exceed {MAX_REMINDERS}.")
    return ReminderConfig(threshold_days=threshold, max_reminders=maximum)
