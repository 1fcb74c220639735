"""
Command-line interface for tenant database maintenance.

This CLI tool checks connectivity, provisions log collections, creates model
indexes and unlocks user accounts for a single tenant.
"""

import argparse
import asyncio
import os
import sys
from typing import Any, Dict, Optional

from tenant_mongodb.config import TenantConfig
from tenant_mongodb.database.log_sink import LogSinkConfig, provision_log_collection
from tenant_mongodb.errors import TenantMongoError
from tenant_mongodb.managers.logging_manager import get_logger
from tenant_mongodb.models.user_models import UserModel
from tenant_mongodb.tenant import Tenant

logger = get_logger(prefix="[TenantCLI]")

DB_URL_ENV_VAR = "TENANT_MONGODB_DB_URL"


class TenantCLI:
    """CLI tool for tenant database maintenance."""

    def __init__(self, tenant_id: str, db_url: str):
        """
        Initialize tenant CLI.

        Args:
            tenant_id: Tenant identifier used in logs
            db_url: MongoDB connection URI of the tenant database
        """
        self.tenant_id = tenant_id
        self.db_url = db_url

    def _config(self, **log_settings: Any) -> TenantConfig:
        data: Dict[str, Any] = {"tenant_id": self.tenant_id, "db_url": self.db_url}
        data.update({key: value for key, value in log_settings.items() if value is not None})
        return TenantConfig.from_mapping(data)

    async def ping(self) -> bool:
        """
        Check that the tenant database is reachable.

        Returns:
            True if the server answered, False otherwise
        """
        logger.info(f"Pinging database of tenant {self.tenant_id}")
        try:
            async with Tenant(self._config()) as tenant:
                healthy = await tenant.health_check()
                if healthy:
                    logger.info(f"Database '{tenant.handle.name}' is reachable")
                return healthy
        except TenantMongoError as e:
            logger.error(f"Ping failed: {e}")
            return False

    async def provision_log(
        self,
        collection: str,
        expiration_days: Optional[int] = None,
        capped: bool = False,
        max_size: Optional[int] = None,
        max_docs: Optional[int] = None,
    ) -> bool:
        """
        Create a log collection with its retention policy.

        Args:
            collection: Log collection name
            expiration_days: TTL retention in days
            capped: Create a capped collection
            max_size: Capped size in MB
            max_docs: Capped document limit

        Returns:
            True if successful, False otherwise
        """
        logger.info(f"Provisioning log collection '{collection}' for tenant {self.tenant_id}")
        try:
            config = self._config(
                log_collection_name=collection,
                log_expiration_days=expiration_days,
                log_capped=capped,
                log_max_size=max_size,
                log_max_docs=max_docs,
            )
            sink_config = LogSinkConfig.from_tenant_config(config)
            tenant = Tenant(config.model_copy(update={"log_collection_name": None}))
            async with tenant:
                await provision_log_collection(tenant.handle.database, sink_config)
            logger.info(f"Log collection '{collection}' is ready")
            return True
        except TenantMongoError as e:
            logger.error(f"Provisioning failed: {e}")
            return False

    async def create_indexes(self) -> bool:
        """
        Create the indexes of the built-in models.

        Returns:
            True if successful, False otherwise
        """
        logger.info(f"Creating indexes for tenant {self.tenant_id}")
        try:
            async with Tenant(self._config()) as tenant:
                tenant.model(UserModel)
                result = await tenant.ensure_indexes()
            for model_name, index_names in result.items():
                logger.info(f"  - {model_name}: {', '.join(index_names) or 'none'}")
            return True
        except TenantMongoError as e:
            logger.error(f"Index creation failed: {e}")
            return False

    async def unlock_user(self, email: str) -> bool:
        """
        Clear the lockout state of a user account.

        Args:
            email: Email address of the account

        Returns:
            True if the account was unlocked, False otherwise
        """
        logger.info(f"Unlocking user {email} for tenant {self.tenant_id}")
        try:
            async with Tenant(self._config()) as tenant:
                users = tenant.model(UserModel)
                document = await users.find_by_email(email)
                if document is None:
                    logger.error(f"User not found: {email}")
                    return False
                await users.unlock(document["_id"])
            logger.info(f"User {email} unlocked")
            return True
        except TenantMongoError as e:
            logger.error(f"Unlock failed: {e}")
            return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenant-mongodb",
        description="Tenant MongoDB maintenance CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--db-url",
        default=os.environ.get(DB_URL_ENV_VAR),
        help=f"MongoDB URI of the tenant database (default: ${DB_URL_ENV_VAR})",
    )
    parser.add_argument(
        "--tenant-id",
        default="default",
        help="Tenant identifier used in logs (default: default)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("ping", help="Check database connectivity")

    log_parser = subparsers.add_parser("provision-log", help="Create a log collection")
    log_parser.add_argument("--collection", default="logs", help="Log collection name (default: logs)")
    log_parser.add_argument("--expiration-days", type=int, help="TTL retention in days (1-365)")
    log_parser.add_argument("--capped", action="store_true", help="Create a capped collection")
    log_parser.add_argument("--max-size", type=int, help="Capped collection size in MB")
    log_parser.add_argument("--max-docs", type=int, help="Capped collection document limit")

    subparsers.add_parser("create-indexes", help="Create model indexes")

    unlock_parser = subparsers.add_parser("unlock-user", help="Unlock a user account")
    unlock_parser.add_argument("--email", required=True, help="Email address of the account")

    return parser


def main(argv: Optional[list] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if not args.db_url:
        logger.error(f"No database URI given; pass --db-url or set {DB_URL_ENV_VAR}")
        sys.exit(1)

    cli = TenantCLI(tenant_id=args.tenant_id, db_url=args.db_url)

    # Execute command
    if args.command == "ping":
        success = asyncio.run(cli.ping())
    elif args.command == "provision-log":
        success = asyncio.run(
            cli.provision_log(
                collection=args.collection,
                expiration_days=args.expiration_days,
                capped=args.capped,
                max_size=args.max_size,
                max_docs=args.max_docs,
            )
        )
    elif args.command == "create-indexes":
        success = asyncio.run(cli.create_indexes())
    elif args.command == "unlock-user":
        success = asyncio.run(cli.unlock_user(email=args.email))
    else:
        parser.print_help()
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
