from __future__ import annotations

import json
import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml

from sponsorcrm import __version__
from sponsorcrm.config import (
    WorkspaceError,
    ensure_workspaces_dir,
    load_workspace,
    set_current_workspace,
    workspace_config_path,
    write_workspace_config,
)
from sponsorcrm.context import AppContext, build_context
from sponsorcrm.domain.models import ActivityDraft, BillingInfo, ContactPerson
from sponsorcrm.domain.rules import ValidationError
from sponsorcrm.domain.stages import ActivityType
from sponsorcrm.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    TransactionError,
)
from sponsorcrm.services import exports, sponsors
from sponsorcrm.services.email import EmailDeliveryError
from sponsorcrm.services.pipeline import BulkUpdate
from sponsorcrm.services.templates import text_block
from sponsorcrm.services.utils import parse_contact

app = typer.Typer(help="Sponsor CRM CLI")
workspace_app = typer.Typer(help="Workspace management")
schema_app = typer.Typer(help="Schema operations")
conference_app = typer.Typer(help="Conferences and tiers")
sponsor_app = typer.Typer(help="Sponsors")
pipeline_app = typer.Typer(help="Sponsor pipeline")
activity_app = typer.Typer(help="Activity history")
template_app = typer.Typer(help="Contract and email templates")
contract_app = typer.Typer(help="Contract signing")
reminders_app = typer.Typer(help="Contract reminders")
delete_app = typer.Typer(help="Cascading deletes")
export_app = typer.Typer(help="Exports")

app.add_typer(workspace_app, name="workspace")
app.add_typer(schema_app, name="schema")
app.add_typer(conference_app, name="conference")
app.add_typer(sponsor_app, name="sponsor")
app.add_typer(pipeline_app, name="pipeline")
app.add_typer(activity_app, name="activity")
app.add_typer(template_app, name="template")
app.add_typer(contract_app, name="contract")
app.add_typer(reminders_app, name="reminders")
app.add_typer(delete_app, name="delete")
app.add_typer(export_app, name="export")

CLI_ERRORS = (
    ValidationError,
    NotFoundError,
    ConfigurationError,
    AuthenticationError,
    ProviderError,
    TransactionError,
    EmailDeliveryError,
)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress to stderr."),
):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init")
def init() -> None:
    """Initialize directories for workspaces and outputs."""
    ensure_workspaces_dir()
    Path("data").mkdir(exist_ok=True)
    Path("exports").mkdir(exist_ok=True)
    typer.echo("Initialized sponsorcrm directories.")


@workspace_app.command("add")
def workspace_add(
    name: str = typer.Argument(...),
    from_address: str = typer.Option(..., "--from", help="Sender address for sponsor emails."),
    portal_url: str = typer.Option(
        "http://localhost:3000", "--portal-url", help="Base URL of the sponsor signing portal."
    ),
    external_api: str | None = typer.Option(
        None, "--external-api", help="Base URL of the external e-signature API."
    ),
    use: bool = typer.Option(True, "--use/--no-use", help="Set as current workspace."),
    force: bool = typer.Option(False, "--force", help="Overwrite existing workspace config if it exists."),
) -> None:
    config_path = workspace_config_path(name)
    if config_path.exists() and not force:
        raise typer.BadParameter(f"Workspace already exists: {config_path}. Use --force to overwrite.")
    config_path = write_workspace_config(name, from_address, portal_url, external_api)
    if use:
        set_current_workspace(name)
    typer.echo(f"Workspace created: {config_path}")


@workspace_app.command("use")
def workspace_use(name: str = typer.Argument(...)) -> None:
    if not workspace_config_path(name).exists():
        raise typer.BadParameter(f"Workspace config not found: {workspace_config_path(name)}")
    set_current_workspace(name)
    typer.echo(f"Active workspace: {name}")


@schema_app.command("apply")
def schema_apply() -> None:
    _context()
    typer.echo("Applied schema to local SQLite.")


@conference_app.command("add")
def conference_add(
    title: str = typer.Argument(...),
    city: str | None = typer.Option(None, "--city"),
    start: str | None = typer.Option(None, "--start", help="YYYY-MM-DD"),
    end: str | None = typer.Option(None, "--end", help="YYYY-MM-DD"),
    organizer: str | None = typer.Option(None, "--organizer"),
    organizer_org_number: str | None = typer.Option(None, "--organizer-org-number"),
    sponsor_email: str | None = typer.Option(None, "--sponsor-email"),
    signing_provider: str | None = typer.Option(None, "--signing-provider", help="self-hosted or external"),
) -> None:
    ctx = _context()
    try:
        conference_id = sponsors.create_conference(
            ctx.store,
            title,
            city=city,
            start_date=start,
            end_date=end,
            organizer=organizer,
            organizer_org_number=organizer_org_number,
            sponsor_email=sponsor_email,
            signing_provider=signing_provider,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created conference: {conference_id}")


@conference_app.command("tier")
def tier_add(
    conference_id: str = typer.Argument(...),
    title: str = typer.Argument(...),
    tagline: str | None = typer.Option(None, "--tagline"),
    tier_type: str | None = typer.Option(None, "--type"),
    price: float | None = typer.Option(None, "--price"),
    currency: str = typer.Option("NOK", "--currency"),
) -> None:
    ctx = _context()
    prices = [{"amount": price, "currency": currency}] if price is not None else []
    try:
        sponsors.get_conference(ctx.store, conference_id)
        tier_id = sponsors.create_tier(ctx.store, conference_id, title, tagline, tier_type, prices)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created tier: {tier_id}")


@conference_app.command("organizer")
def organizer_add(
    name: str = typer.Argument(...),
    email: str | None = typer.Option(None, "--email"),
) -> None:
    ctx = _context()
    try:
        organizer_id = sponsors.create_organizer(ctx.store, name, email)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created organizer: {organizer_id}")


@sponsor_app.command("add")
def sponsor_add(
    name: str = typer.Argument(...),
    website: str | None = typer.Option(None, "--website"),
    contact: Annotated[
        list[str] | None,
        typer.Option("--contact", help='Contact as "Name <email>"; the first one is primary.'),
    ] = None,
    org_number: str | None = typer.Option(None, "--org-number"),
    address: str | None = typer.Option(None, "--address"),
    billing_email: str | None = typer.Option(None, "--billing-email"),
    billing_reference: str | None = typer.Option(None, "--billing-reference"),
) -> None:
    ctx = _context()
    contacts = []
    for index, raw in enumerate(contact or []):
        contact_name, contact_email = parse_contact(raw)
        contacts.append(ContactPerson(name=contact_name, email=contact_email, is_primary=index == 0))
    billing = None
    if billing_email or billing_reference:
        billing = BillingInfo(email=billing_email, reference=billing_reference)
    try:
        sponsor_id = sponsors.create_sponsor(
            ctx.store,
            name,
            website=website,
            contacts=contacts,
            org_number=org_number,
            address=address,
            billing=billing,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created sponsor: {sponsor_id}")


@pipeline_app.command("add")
def pipeline_add(
    sponsor_id: str = typer.Argument(...),
    conference_id: str = typer.Argument(...),
    tier_id: str | None = typer.Option(None, "--tier"),
    value: float | None = typer.Option(None, "--value"),
    currency: str | None = typer.Option(None, "--currency"),
    assigned_to: str | None = typer.Option(None, "--assign"),
    tag: Annotated[list[str] | None, typer.Option("--tag")] = None,
    notes: str | None = typer.Option(None, "--notes"),
) -> None:
    ctx = _context()
    try:
        sfc_id = sponsors.add_to_conference(
            ctx.store,
            sponsor_id,
            conference_id,
            tier_id=tier_id,
            contract_value=value,
            contract_currency=currency,
            assigned_to=assigned_to,
            tags=tag,
            notes=notes,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Added to pipeline: {sfc_id}")


@pipeline_app.command("list")
def pipeline_list(
    conference_id: str | None = typer.Option(None, "--conference"),
    status: str | None = typer.Option(None, "--status"),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON output."),
) -> None:
    ctx = _context()
    rows = sponsors.list_records(ctx.store, conference_id=conference_id, status=status)
    if json_output:
        typer.echo(json.dumps(rows, indent=2))
        return
    for row in rows:
        typer.echo(
            f"{row['sfc_id']} | {row['sponsor_name']} | {row['status']} | {row['contract_status']} "
            f"| {row['signature_status']} | {row['invoice_status']}"
        )


@pipeline_app.command("move")
def pipeline_move(
    sfc_id: str = typer.Argument(...),
    value: str = typer.Argument(..., help="Target status value."),
    axis: str = typer.Option("pipeline", "--axis", help="pipeline, contract, signature or invoice"),
    author: str = typer.Option("system", "--author"),
) -> None:
    ctx = _context()
    try:
        result = ctx.mutations.update_status(sfc_id, axis, value, author)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    if not result.changed:
        typer.echo(f"{sfc_id} already {value}.")
        return
    typer.echo(f"{sfc_id}: {result.old_value} -> {result.new_value}")


@pipeline_app.command("bulk")
def pipeline_bulk(
    sfc_ids: list[str] = typer.Argument(...),
    status: str | None = typer.Option(None, "--status"),
    contract_status: str | None = typer.Option(None, "--contract-status"),
    invoice_status: str | None = typer.Option(None, "--invoice-status"),
    add_tag: Annotated[list[str] | None, typer.Option("--add-tag")] = None,
    remove_tag: Annotated[list[str] | None, typer.Option("--remove-tag")] = None,
    author: str = typer.Option("system", "--author"),
) -> None:
    ctx = _context()
    update = BulkUpdate(
        status=status,
        contract_status=contract_status,
        invoice_status=invoice_status,
        add_tags=add_tag or [],
        remove_tags=remove_tag or [],
    )
    try:
        result = ctx.mutations.bulk_update(sfc_ids, update, author)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Updated {result.updated} of {result.total} records.")


@activity_app.command("list")
def activity_list(sfc_id: str = typer.Argument(...)) -> None:
    ctx = _context()
    for activity in ctx.activity_log.list_for(sfc_id):
        typer.echo(f"{activity.created_at} | {activity.activity_type} | {activity.description} | {activity.created_by}")


@activity_app.command("add")
def activity_add(
    sfc_id: str = typer.Argument(...),
    description: str = typer.Argument(...),
    activity_type: str = typer.Option(ActivityType.NOTE.value, "--type", help="note, call, meeting or email"),
    author: str = typer.Option("system", "--author"),
) -> None:
    ctx = _context()
    try:
        sponsors.get_record(ctx.store, sfc_id)
        activity_id = ctx.activity_log.record(sfc_id, ActivityDraft(activity_type, description), author)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Logged activity: {activity_id}")


@template_app.command("contract")
def template_contract(
    conference_id: str = typer.Argument(...),
    path: Path = typer.Argument(..., help="YAML file with title, sections and terms."),
) -> None:
    """Load a contract template from YAML; plain string paragraphs become text blocks."""
    ctx = _context()
    data = _read_yaml(path)
    sections = [
        {"heading": section.get("heading", ""), "body": _blocks(section.get("body"))}
        for section in data.get("sections") or []
    ]
    try:
        template_id = sponsors.create_contract_template(
            ctx.store,
            conference_id,
            data.get("title") or "",
            sections,
            language=data.get("language", "en"),
            tier_id=data.get("tier_id"),
            currency=data.get("currency"),
            header_text=data.get("header_text"),
            footer_text=data.get("footer_text"),
            terms=_blocks(data.get("terms")),
            is_default=bool(data.get("is_default", False)),
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created contract template: {template_id}")


@template_app.command("email")
def template_email(
    slug: str = typer.Argument(..., help="contract-sent, contract-reminder or contract-signed"),
    path: Path = typer.Argument(..., help="YAML file with subject and body."),
    conference_id: str | None = typer.Option(None, "--conference"),
) -> None:
    ctx = _context()
    data = _read_yaml(path)
    try:
        template_id = sponsors.create_email_template(
            ctx.store, slug, data.get("subject") or "", _blocks(data.get("body")), conference_id
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created email template: {template_id}")


@contract_app.command("send")
def contract_send(
    sfc_id: str = typer.Argument(...),
    template_id: str | None = typer.Option(None, "--template"),
    signer_name: str | None = typer.Option(None, "--signer-name"),
    signer_email: str | None = typer.Option(None, "--signer-email"),
    language: str | None = typer.Option(None, "--language"),
    author: str = typer.Option("system", "--author"),
) -> None:
    ctx = _context()
    try:
        result = ctx.contracts.generate_contract(
            sfc_id,
            template_id=template_id,
            signer_name=signer_name,
            signer_email=signer_email,
            language=language,
            author=author,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Contract sent via {result.provider}: agreement {result.agreement_id}")
    if result.signing_url:
        typer.echo(f"Signing URL: {result.signing_url}")


@contract_app.command("sign")
def contract_sign(
    sfc_id: str = typer.Argument(...),
    signer_name: str = typer.Option(..., "--signer-name"),
    signed_at: str | None = typer.Option(None, "--signed-at", help="ISO 8601; defaults to now."),
    organizer_signed_by: str | None = typer.Option(None, "--organizer"),
    organizer_signed_at: str | None = typer.Option(None, "--organizer-signed-at"),
) -> None:
    """Record a signature received outside the signing providers."""
    ctx = _context()
    signed_at = signed_at or datetime.now(UTC).replace(microsecond=0).isoformat()
    try:
        result = ctx.contracts.record_signature_event(
            sfc_id,
            signed_at,
            signer_name,
            organizer_signed_by=organizer_signed_by,
            organizer_signed_at=organizer_signed_at,
        )
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    if not result.changed:
        typer.echo(f"{sfc_id} was already signed.")
        return
    typer.echo(f"Recorded signature for {sfc_id}.")


@contract_app.command("status")
def contract_status(sfc_id: str = typer.Argument(...)) -> None:
    ctx = _context()
    try:
        status = ctx.contracts.refresh_signature_status(sfc_id)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"{sfc_id}: {status.status} ({status.provider_status})")


@contract_app.command("cancel")
def contract_cancel(
    sfc_id: str = typer.Argument(...),
    author: str = typer.Option("system", "--author"),
) -> None:
    ctx = _context()
    try:
        ctx.contracts.cancel_contract(sfc_id, author)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Cancelled signing for {sfc_id}.")


@reminders_app.command("sweep")
def reminders_sweep(json_output: bool = typer.Option(False, "--json", help="Emit JSON output.")) -> None:
    """Send due contract reminders; safe to run from cron."""
    ctx = _context()
    result = ctx.reminders.sweep()
    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    if result.message:
        typer.echo(result.message)
        return
    typer.echo(f"Reminders: {result.sent} sent, {result.failed} failed of {result.total}.")


@delete_app.command("record")
def delete_record(
    sfc_ids: list[str] = typer.Argument(...),
    delete_contract_asset: bool = typer.Option(
        False, "--delete-contract-asset", help="Also delete the contract PDF when nothing else uses it."
    ),
) -> None:
    ctx = _context()
    try:
        if len(sfc_ids) == 1:
            plan = ctx.deleter.delete_sponsor_for_conference(sfc_ids[0], delete_contract_asset)
            typer.echo(f"Deleted: {_format_summary(plan.summary())}")
            return
        result = ctx.deleter.delete_many(sfc_ids, delete_contract_asset)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Deleted {result.deleted} of {result.total} records ({len(result.asset_ids)} assets).")


@delete_app.command("sponsor")
def delete_sponsor(sponsor_id: str = typer.Argument(...)) -> None:
    ctx = _context()
    try:
        plan = ctx.deleter.delete_sponsor(sponsor_id)
    except CLI_ERRORS as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Deleted: {_format_summary(plan.summary())}")


@export_app.command("excel")
def export_excel(
    out: str = typer.Option(..., "--out"),
    conference_id: str | None = typer.Option(None, "--conference"),
) -> None:
    ctx = _context()
    exports.export_excel(ctx.store, Path(out), conference_id)
    typer.echo(f"Exported Excel to {out}")


@app.command("snapshot")
def snapshot() -> None:
    ctx = _context()
    snapshot_dir = Path("data") / "snapshots" / datetime.now(UTC).date().isoformat()
    snapshot_dir.mkdir(parents=True, exist_ok=True)
    if ctx.store.db_path.exists():
        shutil.copy2(ctx.store.db_path, snapshot_dir / "local.sqlite")
    exports.export_csv_tables(ctx.store, snapshot_dir)
    typer.echo(f"Snapshot created at {snapshot_dir}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
) -> None:
    """Run the HTTP API (reminder cron trigger, signing callbacks, status updates)."""
    import uvicorn

    from sponsorcrm.api import create_app

    uvicorn.run(create_app(_context()), host=host, port=port)


def _context() -> AppContext:
    try:
        return build_context(load_workspace())
    except WorkspaceError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        _exit_with_error(f"File not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        _exit_with_error(f"{path} must contain a mapping.")
    return data


def _blocks(value: Any) -> list[dict[str, Any]]:
    if not value:
        return []
    if isinstance(value, str):
        value = [paragraph for paragraph in value.split("\n\n") if paragraph.strip()]
    return [text_block(item) if isinstance(item, str) else item for item in value]


def _format_summary(summary: dict[str, int]) -> str:
    return ", ".join(f"{count} {name}" for name, count in summary.items() if count) or "nothing"


def _exit_with_error(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
