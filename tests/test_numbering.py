from unittest.mock import patch

from app.config import Settings
from app.models.sequence import NumberSequence
from app.services import numbering


def test_format_number_pads_value():
    assert numbering._format_number("INV-", 6, 42) == "INV-000042"
    assert numbering._format_number(None, 0, 7) == "7"


def test_invoice_numbers_increase(db_session):
    first = numbering.next_invoice_number(db_session)
    second = numbering.next_invoice_number(db_session)

    assert first == "INV-000001"
    assert second == "INV-000002"
    sequence = (
        db_session.query(NumberSequence)
        .filter(NumberSequence.key == numbering.INVOICE_SEQUENCE_KEY)
        .one()
    )
    assert sequence.next_value == 3


def test_invoice_number_uses_settings(db_session):
    config = Settings(invoice_number_prefix="ECN-", invoice_number_padding=4)
    with patch.object(numbering, "settings", config):
        assert numbering.next_invoice_number(db_session) == "ECN-0001"
