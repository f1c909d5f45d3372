from sqlalchemy.orm import Session

from app.config import settings
from app.models.sequence import NumberSequence

INVOICE_SEQUENCE_KEY = "invoice_number"


def _format_number(prefix: str | None, padding: int | None, value: int) -> str:
    prefix_value = prefix or ""
    pad = max(int(padding or 0), 0)
    if pad > 0:
        return f"{prefix_value}{value:0{pad}d}"
    return f"{prefix_value}{value}"


def _next_sequence_value(db: Session, key: str, start_value: int = 1) -> int:
    sequence = (
        db.query(NumberSequence)
        .filter(NumberSequence.key == key)
        .with_for_update()
        .first()
    )
    if not sequence:
        sequence = NumberSequence(key=key, next_value=start_value)
        db.add(sequence)
        db.flush()
    value = sequence.next_value
    sequence.next_value = value + 1
    db.flush()
    return value


def next_invoice_number(db: Session) -> str:
    value = _next_sequence_value(db, INVOICE_SEQUENCE_KEY)
    return _format_number(
        settings.invoice_number_prefix, settings.invoice_number_padding, value
    )
