"""
Tests for MessageComposer
"""

import pytest
from unittest.mock import Mock

from services.common.errors import TemplateNotFoundError
from services.message_composer import MessageComposer


@pytest.fixture
def tenant():
    return Mock(
        business_name='Salon Neema',
        currency='KES',
        message_templates={'welcome': 'welcome_template', 'vip_welcome': 'vip'},
    )


class TestMessageComposer:

    def test_logical_key_resolves_through_tenant_mapping(self, tenant):
        composer = MessageComposer()

        assert composer.resolve(tenant, 'welcome') == 'welcome_template'
        assert composer.resolve(tenant, 'follow_up_24hr') == 'follow_up_reminder'
        assert composer.resolve(tenant, 'payment_pending') == 'payment_pending'

    def test_render_fills_placeholders(self, tenant):
        composer = MessageComposer()

        body = composer.render(tenant, 'payment_reminder', {'amount': '1500.00', 'hours_left': 47})

        assert body == (
            "Hi! Your payment of KES 1500.00 is pending. It will expire in 47 hours. "
            "Pay now to secure your booking."
        )

    def test_business_name_is_always_available(self, tenant):
        body = MessageComposer().render(tenant, 'welcome')

        assert 'Salon Neema' in body

    def test_missing_values_leave_placeholder(self, tenant):
        body = MessageComposer().render(tenant, 'follow_up_24hr', {})

        assert '{service}' in body

    def test_unknown_key_raises(self, tenant):
        composer = MessageComposer()

        with pytest.raises(TemplateNotFoundError):
            composer.render(tenant, 'does_not_exist')
        # Mapped to a template name nobody defined
        with pytest.raises(TemplateNotFoundError):
            composer.resolve(tenant, 'vip_welcome')
        assert composer.has_template(tenant, 'vip_welcome') is False

    def test_custom_templates_extend_defaults(self, tenant):
        composer = MessageComposer(templates={'vip': 'Karibu tena, {customer_name}!'})

        assert composer.render(tenant, 'vip_welcome', {'customer_name': 'Amina'}) == 'Karibu tena, Amina!'

    def test_tenant_without_mapping_uses_platform_defaults(self):
        bare = Mock(business_name='Duka', currency='KES', message_templates=None)

        assert MessageComposer().resolve(bare, 'follow_up_2hr') == 'follow_up_gentle'
