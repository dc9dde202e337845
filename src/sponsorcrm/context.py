from __future__ import annotations

from dataclasses import dataclass

from sponsorcrm.adapters.signing import (
    ExternalSigningProvider,
    ProviderRegistry,
    SelfHostedSigningProvider,
    SigningProvider,
)
from sponsorcrm.config import ESIGN_ACCESS_TOKEN_ENV, WorkspaceConfig, env_secret
from sponsorcrm.domain.stages import SigningProviderKind
from sponsorcrm.services.activity import ActivityLog
from sponsorcrm.services.board import BoardReconciler, QueryCache
from sponsorcrm.services.clock import Clock, SystemClock
from sponsorcrm.services.contracts import ContractLifecycleManager
from sponsorcrm.services.deletion import CascadingDeleteExecutor
from sponsorcrm.services.email import EmailSender, Mailer, OutboxEmailSender
from sponsorcrm.services.pipeline import PipelineMutationService
from sponsorcrm.services.reminders import ReminderScheduler
from sponsorcrm.services.retry import RetryPolicy
from sponsorcrm.store.sqlite import SqliteStore


@dataclass
class AppContext:
    """Every service for one workspace, wired against a single store and clock."""

    config: WorkspaceConfig
    store: SqliteStore
    clock: Clock
    activity_log: ActivityLog
    mutations: PipelineMutationService
    deleter: CascadingDeleteExecutor
    mailer: Mailer
    providers: ProviderRegistry
    contracts: ContractLifecycleManager
    reminders: ReminderScheduler

    def board(self, cache: QueryCache | None = None) -> BoardReconciler:
        return BoardReconciler(cache or QueryCache(), self.mutations.update_status)


def build_context(
    config: WorkspaceConfig,
    clock: Clock | None = None,
    email_sender: EmailSender | None = None,
    external_provider: SigningProvider | None = None,
    retry: RetryPolicy | None = None,
) -> AppContext:
    clock = clock or SystemClock()
    store = SqliteStore(config.store.sqlite_path)
    store.apply_schema()

    activity_log = ActivityLog(store, clock)
    mutations = PipelineMutationService(store, activity_log, clock)
    deleter = CascadingDeleteExecutor(store, activity_log)
    sender = email_sender or OutboxEmailSender(config.email.outbox_path, clock)
    mailer = Mailer(sender, config.email.from_address, retry=retry)
    providers = build_providers(config, store, clock, external_provider, retry)
    sender_name = config.email.sender_name

    return AppContext(
        config=config,
        store=store,
        clock=clock,
        activity_log=activity_log,
        mutations=mutations,
        deleter=deleter,
        mailer=mailer,
        providers=providers,
        contracts=ContractLifecycleManager(
            store,
            activity_log,
            clock,
            providers,
            mailer,
            deleter,
            mutations,
            sender_name=sender_name,
        ),
        reminders=ReminderScheduler(
            store,
            activity_log,
            clock,
            mailer,
            threshold_days=config.reminders.threshold_days,
            max_reminders=config.reminders.max_reminders,
            sender_name=sender_name,
        ),
    )


def build_providers(
    config: WorkspaceConfig,
    store: SqliteStore,
    clock: Clock,
    external_provider: SigningProvider | None = None,
    retry: RetryPolicy | None = None,
) -> ProviderRegistry:
    signing = config.signing
    providers: dict[str, SigningProvider] = {
        SigningProviderKind.SELF_HOSTED.value: SelfHostedSigningProvider(
            store, signing.portal_base_url, name=signing.provider_name, clock=clock
        )
    }
    if external_provider is not None:
        providers[SigningProviderKind.EXTERNAL.value] = external_provider
    elif signing.external is not None:
        providers[SigningProviderKind.EXTERNAL.value] = ExternalSigningProvider(
            signing.external.api_base_url,
            env_secret(ESIGN_ACCESS_TOKEN_ENV),
            name=signing.external.provider_name,
            retry=retry,
        )
    return ProviderRegistry(providers, default=signing.default_provider)
