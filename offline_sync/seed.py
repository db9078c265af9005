"""Demo data for local development

Creates three wallet holders (consumer, merchant, agent) with funded
primary wallets and a couple of saved contacts each. Safe to run more than
once: users that already exist are left alone.

Run with: python -m offline_sync.seed
"""

from decimal import Decimal

from .currency import Currency
from .users import UserRole
from .wallets import WalletType
from .logging_config import get_logger

logger = get_logger("offline_sync.seed")

DEMO_USERS = [
    {
        "user_id": "consumer-001",
        "first_name": "Amara",
        "last_name": "Okafor",
        "phone_number": "+233241234567",
        "current_role": UserRole.CONSUMER,
        "opening_balance": Decimal("500.00"),
    },
    {
        "user_id": "merchant-001",
        "first_name": "Kwame",
        "last_name": "Asante",
        "phone_number": "+233241234568",
        "current_role": UserRole.MERCHANT,
        "opening_balance": Decimal("2500.00"),
    },
    {
        "user_id": "agent-001",
        "first_name": "Fatima",
        "last_name": "Hassan",
        "phone_number": "+233241234569",
        "current_role": UserRole.AGENT,
        "opening_balance": Decimal("10000.00"),
    },
]

DEMO_CONTACTS = [
    ("Family Contact", "+233241234567"),
    ("Business Contact", "+233241234568"),
]


def seed_demo_data(system, currency: Currency = Currency.USD) -> int:
    """Create the demo users, wallets and contacts; returns how many users were added"""
    created = 0
    for demo in DEMO_USERS:
        if system.users.get_user(demo["user_id"]):
            continue

        user = system.users.create_user(
            first_name=demo["first_name"],
            last_name=demo["last_name"],
            phone_number=demo["phone_number"],
            current_role=demo["current_role"],
            user_id=demo["user_id"]
        )
        system.wallets.create_wallet(
            user.id,
            wallet_type=WalletType.PRIMARY,
            currency=currency,
            initial_balance=demo["opening_balance"]
        )
        for name, phone in DEMO_CONTACTS:
            system.users.add_contact(user.id, name, phone)
        created += 1

    if created:
        logger.info(f"Seeded {created} demo users")
    return created


if __name__ == "__main__":
    from .api.auth import get_system
    from .config import get_config
    from .logging_config import setup_logging

    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format)
    seed_demo_data(get_system(), Currency.from_code(cfg.default_currency))
