# commands.py

import click
from flask import current_app
from flask.cli import with_appcontext
from sqlalchemy.exc import IntegrityError

from flowstack_database import DEFAULT_FOLLOW_UP_RULES, DEFAULT_MESSAGE_TEMPLATES


@click.command('create-business')
@click.option('--name', prompt=True, help='Business name')
@click.option('--whatsapp-number', prompt=True, help='WhatsApp business number, e.g. +254700000001')
@click.option('--owner-phone', prompt=True, help='Owner phone for operational notices')
@click.option('--industry', default=None, help='Industry, used in message templates')
@click.option('--currency', default=None, help='ISO currency code (defaults to DEFAULT_CURRENCY)')
@click.option('--timezone', 'tz', default='Africa/Nairobi', show_default=True, help='Tenant timezone')
@with_appcontext
def create_business(name, whatsapp_number, owner_phone, industry, currency, tz):
    """Register a tenant with the default follow-up rules and templates"""
    repo = current_app.services.get('business_repository')

    if repo.find_by_whatsapp_number(whatsapp_number):
        click.echo(f'A business already uses {whatsapp_number}.')
        return

    try:
        business = repo.create(
            business_name=name,
            whatsapp_number=whatsapp_number,
            owner_phone=owner_phone,
            industry=industry,
            currency=(currency or current_app.config.get('DEFAULT_CURRENCY', 'KES')).upper(),
            timezone=tz,
            follow_up_rules=dict(DEFAULT_FOLLOW_UP_RULES),
            message_templates=dict(DEFAULT_MESSAGE_TEMPLATES),
        )
        repo.commit()
    except IntegrityError:
        repo.rollback()
        click.echo(f'Failed to create business: {whatsapp_number} is already registered')
        return

    click.echo(f'Business created: {business.business_name} (id={business.id})')


@click.command('sweep-follow-ups')
@click.option('--limit', type=int, default=None, help='Maximum tasks to dispatch')
@with_appcontext
def sweep_follow_ups(limit):
    """Dispatch due follow-ups that no worker is holding"""
    dispatched = current_app.services.get('follow_up').check_pending_follow_ups(limit)
    click.echo(f'Dispatched {dispatched} follow-up(s)')


@click.command('expire-payments')
@click.option('--limit', type=int, default=None, help='Maximum intents to expire')
@with_appcontext
def expire_payments(limit):
    """Expire active payment intents past their expiry time"""
    expired = current_app.services.get('payment_intent').check_expired_intents(limit)
    click.echo(f'Expired {expired} payment intent(s)')


def init_app(app):
    """Register commands with the Flask app"""
    app.cli.add_command(create_business)
    app.cli.add_command(sweep_follow_ups)
    app.cli.add_command(expire_payments)
