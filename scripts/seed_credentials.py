"""
Store provider credentials (encrypted with ENCRYPTION_KEY) in provider_credentials.

Usage:
    python scripts/seed_credentials.py --provider hotmart --client-id ID --client-secret SECRET \
        --webhook-secret HOTTOK --basic-token BASIC
    python scripts/seed_credentials.py --provider doppus --client-id ID --client-secret SECRET \
        --webhook-secret KEY --environment production
"""
import argparse
import asyncio
import logging

from sqlalchemy import select

from src.database import async_session_factory
from src.models.provider_credential import ProviderCredential
from src.utils.encryption import encrypt_value

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed(args) -> None:
    async with async_session_factory() as db:
        result = await db.execute(
            select(ProviderCredential).where(ProviderCredential.provider == args.provider)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = ProviderCredential(provider=args.provider)
            db.add(row)
            logger.info("Creating credentials for %s", args.provider)
        else:
            logger.info("Updating credentials for %s", args.provider)

        if args.client_id is not None:
            row.client_id = args.client_id
        if args.client_secret is not None:
            row.client_secret_encrypted = encrypt_value(args.client_secret)
        if args.webhook_secret is not None:
            row.webhook_secret_encrypted = encrypt_value(args.webhook_secret)
        if args.basic_token is not None:
            row.basic_token_encrypted = encrypt_value(args.basic_token)
        row.environment = args.environment
        row.is_active = not args.inactive

        await db.commit()
    logger.info("Credentials for %s saved (environment=%s)", args.provider, args.environment)


def main():
    parser = argparse.ArgumentParser(description="Seed provider credentials")
    parser.add_argument("--provider", required=True, choices=["hotmart", "doppus"])
    parser.add_argument("--client-id")
    parser.add_argument("--client-secret")
    parser.add_argument("--webhook-secret")
    parser.add_argument("--basic-token")
    parser.add_argument("--environment", default="production", choices=["production", "sandbox"])
    parser.add_argument("--inactive", action="store_true")
    asyncio.run(seed(parser.parse_args()))


if __name__ == "__main__":
    main()
