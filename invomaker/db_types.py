"""Types de colonnes communs a SQLite et PostgreSQL."""
from decimal import Decimal

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator


class DecimalString(TypeDecorator):
    """
    Decimal stocke en texte.

    SQLite n a pas de type decimal exact : Numeric y passe par des flottants.
    Les montants gardent ici toute leur precision.
    """
    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)
