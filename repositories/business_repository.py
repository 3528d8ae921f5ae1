"""
BusinessRepository - Data access layer for Business (tenant) model
"""

from typing import Optional
from repositories.base_repository import BaseRepository
from flowstack_database import Business


class BusinessRepository(BaseRepository):
    """Repository for Business data access"""

    def __init__(self, session):
        super().__init__(session, Business)

    def find_by_whatsapp_number(self, whatsapp_number: str) -> Optional[Business]:
        """
        Find the tenant that owns a WhatsApp number.

        Numbers are compared without a leading '+' since the Cloud API
        reports display numbers bare.
        """
        normalized = (whatsapp_number or '').lstrip('+')
        return self.session.query(self.model_class)\
            .filter(self.model_class.whatsapp_number.in_([normalized, f'+{normalized}']))\
            .first()
