"""Construction of the shared service handles injected into every request."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Optional

import structlog

from clinicavoice import invitations, transcriptions
from clinicavoice.config import Settings
from clinicavoice.integrations import (
    EntityExtractor,
    FileStorage,
    IdentityProvider,
    LexiconEntityExtractor,
    LocalInvoker,
    LoggingNotifier,
    LoggingTranscriptionEngine,
    Notifier,
    PortalIdentityProvider,
    SignedUrlStorage,
    TranscriptionEngine,
    WebhookNotifier,
)
from clinicavoice.store import DocumentStore, create_store
from clinicavoice.tasks import DetachedTaskRunner

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    store: DocumentStore
    tasks: DetachedTaskRunner
    notifier: Notifier
    invoker: LocalInvoker
    identity: IdentityProvider
    storage: FileStorage
    transcriber: TranscriptionEngine
    extractor: EntityExtractor

    def close(self) -> None:
        self.tasks.shutdown(wait=True)


def _build_notifier(settings: Settings) -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url, settings.notification_sender)
    return LoggingNotifier(settings.notification_sender)


def register_functions(services: Services) -> None:
    """Bind every detached function name to its handler."""

    invoker = services.invoker
    invoker.register(invitations.INVITATION_FUNCTION, partial(invitations.send_invitation, services))
    invoker.register(transcriptions.PROCESSOR_FUNCTION, partial(transcriptions.process_upload, services))
    invoker.register(
        transcriptions.COMPLETION_FUNCTION, partial(transcriptions.complete_transcription, services)
    )
    invoker.register(
        transcriptions.MEDICAL_ANALYSIS_FUNCTION,
        partial(transcriptions.analyze_transcription, services),
    )


def build_services(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    *,
    inline_tasks: Optional[bool] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    """Wire the store, task runner and collaborators for ``settings``."""

    if store is None:
        store = create_store(settings.database_url, **settings.engine_options())
    inline = settings.inline_tasks if inline_tasks is None else inline_tasks
    tasks = DetachedTaskRunner(max_workers=settings.task_workers, inline=inline)

    services = Services(
        settings=settings,
        store=store,
        tasks=tasks,
        notifier=notifier or _build_notifier(settings),
        invoker=LocalInvoker(tasks),
        identity=PortalIdentityProvider(store),
        storage=SignedUrlStorage(
            settings.upload_base_url, settings.upload_bucket, settings.upload_signing_secret
        ),
        transcriber=LoggingTranscriptionEngine(),
        extractor=LexiconEntityExtractor(),
    )
    register_functions(services)
    logger.info("services_ready", functions=list(services.invoker.registered()), inline_tasks=inline)
    return services


__all__ = ["Services", "build_services", "register_functions"]
