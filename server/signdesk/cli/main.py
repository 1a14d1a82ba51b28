"""
Operator CLI for the signing provider integration
"""

import asyncio
import json
import logging
from datetime import timedelta

import click

from signdesk.api.dependencies.signature import build_signature_service
from signdesk.core.config import get_settings
from signdesk.core.logging import configure_logging
from signdesk.db.session import async_session_factory, init_models
from signdesk.integrations.esignature import AdobeSignAdapter, SignatureError, WebhookEventType
from signdesk.services.document_repository import DocumentNotFoundError, SqlAlchemyDocumentRepository
from signdesk.services.rate_limit_gate import RateLimitGate
from signdesk.services.records import DocumentRecord


def _build_service(provider):
    repository = SqlAlchemyDocumentRepository(async_session_factory)
    return build_signature_service(get_settings(), provider, repository, RateLimitGate())


def _describe(document: DocumentRecord) -> dict:
    return {
        "id": document.id,
        "name": document.name,
        "status": document.status.value,
        "agreementId": document.provider_agreement_id,
        "recipients": [
            {
                "email": recipient.email,
                "order": recipient.order,
                "status": recipient.status.value,
                "signedAt": recipient.signed_at.isoformat() if recipient.signed_at else None,
            }
            for recipient in document.recipients
        ],
    }


@click.group()
@click.option('--verbose', is_flag=True, help='Emit debug logs')
def cli(verbose: bool):
    """SignDesk operator CLI"""
    configure_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command('create-webhook')
@click.argument('url')
@click.option('--name', default='SignDesk status webhook', show_default=True, help='Webhook name shown by the provider')
def create_webhook(url: str, name: str):
    """Register an account-wide webhook pointing at URL"""

    async def run():
        async with AdobeSignAdapter.from_settings(get_settings()) as provider:
            return await provider.create_webhook(url, name, [event.value for event in WebhookEventType])

    try:
        created = asyncio.run(run())
    except SignatureError as e:
        raise click.ClickException(e.error_message) from e
    click.echo(f"Webhook created: {created.get('id', '<unknown id>')}")


@cli.command('check-status')
@click.argument('document_id')
def check_status(document_id: str):
    """Reconcile DOCUMENT_ID with the provider and print the result"""

    async def run():
        async with AdobeSignAdapter.from_settings(get_settings()) as provider:
            service = _build_service(provider)
            await init_models()
            return await service.check_status(document_id)

    try:
        document = asyncio.run(run())
    except DocumentNotFoundError as e:
        raise click.ClickException(str(e)) from e
    except SignatureError as e:
        raise click.ClickException(e.error_message) from e
    click.echo(json.dumps(_describe(document), indent=2))


@cli.command('recover')
@click.argument('document_id')
@click.option('--window-minutes', type=int, default=None, help='Override the agreement search window')
def recover(document_id: str, window_minutes):
    """Look for the agreement of an interrupted send of DOCUMENT_ID"""

    async def run():
        async with AdobeSignAdapter.from_settings(get_settings()) as provider:
            service = _build_service(provider)
            if window_minutes:
                service.verifier.search_window = timedelta(minutes=window_minutes)
            await init_models()
            return await service.recover_send(document_id)

    try:
        result = asyncio.run(run())
    except DocumentNotFoundError as e:
        raise click.ClickException(str(e)) from e
    except SignatureError as e:
        raise click.ClickException(e.error_message) from e
    if result.recovered:
        click.echo(f"Recovered ({result.evidence or 'aggressive'}):")
    else:
        click.echo(f"Not recovered: {result.reason}")
    click.echo(json.dumps(_describe(result.document), indent=2))


if __name__ == '__main__':
    cli()
