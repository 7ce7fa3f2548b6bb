"""Create tables and register the partner banks and operators a fresh deployment needs"""

import logging

from payja_gateway.config import settings
from payja_gateway.infrastructure.database.models import BankPartner
from payja_gateway.infrastructure.database.session import SessionLocal, init_db
from payja_gateway.infrastructure.observability.logging import setup_logging

PARTNERS = [
    {"code": "GHW", "name": "Banco GHW", "kind": "BANK", "api_url": "http://localhost:4000", "priority": 1},
    {"code": "BCI", "name": "BCI", "kind": "BANK", "api_url": "http://localhost:4001", "priority": 2},
    {"code": "MPESA", "name": "M-Pesa", "kind": "MOBILE_MONEY", "api_url": settings.mpesa_api_url, "priority": 10},
    {"code": "EMOLA", "name": "e-Mola", "kind": "MOBILE_MONEY", "api_url": settings.emola_api_url, "priority": 11},
    {"code": "MKESH", "name": "mKesh", "kind": "MOBILE_MONEY", "api_url": settings.mkesh_api_url, "priority": 12},
]


def seed() -> int:
    init_db()
    db = SessionLocal()
    created = 0
    try:
        for row in PARTNERS:
            if db.query(BankPartner).filter(BankPartner.code == row["code"]).first():
                continue
            db.add(BankPartner(**row))
            created += 1
        db.commit()
    finally:
        db.close()
    return created


if __name__ == "__main__":
    setup_logging(settings.log_level)
    logging.info("Partners seeded", extra={"created": seed()})
