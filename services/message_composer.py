"""
MessageComposer - renders outbound WhatsApp text from named templates

A tenant's message_templates maps logical keys ('payment_reminder') to
template names ('payment_pending'). Rendering accepts either and resolves
the tenant mapping first.
"""

from typing import Any, Dict, Optional

from flowstack_database import Business, DEFAULT_MESSAGE_TEMPLATES
from services.common.errors import TemplateNotFoundError

DEFAULT_TEMPLATES = {
    'welcome_template': "Hi! Thanks for reaching out to {business_name}. How can we help you today?",
    'follow_up_gentle': "Hi again! Just checking in - do you still need help with this?",
    'follow_up_reminder': "Hello! We noticed you haven't replied yet. Are you still interested in {service}?",
    'payment_pending': (
        "Hi! Your payment of {currency} {amount} is pending. It will expire in {hours_left} hours. "
        "Pay now to secure your booking."
    ),
    'payment_expired': "Hi! Your payment request has expired. Please let us know if you'd still like to proceed.",
    'payment_confirmed': "Payment received! Thank you. We'll be in touch shortly.",
    'owner_escalation': "Attention needed: conversation with {customer_phone} requires your follow-up ({reason}).",
    'owner_payment_failed': "Payment of {currency} {amount} from {customer_phone} failed: {reason}.",
    'owner_dormant': "Conversation with {customer_phone} has gone quiet and was marked dormant.",
}


class _KeepMissing(dict):
    """format_map mapping that leaves unknown placeholders untouched"""

    def __missing__(self, key):
        return '{' + key + '}'


class MessageComposer:
    """Resolves and renders message templates"""

    def __init__(self, templates: Optional[Dict[str, str]] = None):
        self.templates = dict(DEFAULT_TEMPLATES)
        if templates:
            self.templates.update(templates)

    def resolve(self, business: Optional[Business], template_key: str) -> str:
        """
        Map a logical key to a template name through the tenant's mapping.

        Raises:
            TemplateNotFoundError: Neither the key nor its mapping is known
        """
        mapping = dict(DEFAULT_MESSAGE_TEMPLATES)
        if business is not None:
            mapping.update(business.message_templates or {})
        name = mapping.get(template_key, template_key)
        if name not in self.templates:
            raise TemplateNotFoundError(f"Template not found: {template_key}", {'template_key': template_key})
        return name

    def has_template(self, business: Optional[Business], template_key: str) -> bool:
        try:
            self.resolve(business, template_key)
            return True
        except TemplateNotFoundError:
            return False

    def render(self, business: Optional[Business], template_key: str,
               context: Optional[Dict[str, Any]] = None) -> str:
        """
        Render a template with {placeholder} substitution.

        Placeholders without a value in context are left as written.
        """
        template = self.templates[self.resolve(business, template_key)]
        values = _KeepMissing()
        if business is not None:
            values['business_name'] = business.business_name
            values['currency'] = business.currency
        for key, value in (context or {}).items():
            values[key] = '' if value is None else value
        return template.format_map(values)
