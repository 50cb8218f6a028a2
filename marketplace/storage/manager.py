import logging
import os
from typing import Optional

import aiosqlite

from ._migrate import run_migrations
from .agents import AgentRepo
from .capabilities import CapabilityRepo
from .matches import MatchRepo
from .requests import RequestRepo
from .transactions import TransactionRepo
from .verifications import VerificationRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "data/marketplace.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self.agents: Optional[AgentRepo] = None
        self.capabilities: Optional[CapabilityRepo] = None
        self.requests: Optional[RequestRepo] = None
        self.matches: Optional[MatchRepo] = None
        self.transactions: Optional[TransactionRepo] = None
        self.verifications: Optional[VerificationRepo] = None

    async def initialize(self):
        if self.db_path != ":memory:":
            parent = os.path.dirname(self.db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await run_migrations(self._db, logger)

        self.agents = AgentRepo(self._db)
        self.capabilities = CapabilityRepo(self._db)
        self.requests = RequestRepo(self._db)
        self.matches = MatchRepo(self._db)
        self.transactions = TransactionRepo(self._db)
        self.verifications = VerificationRepo(self._db)

        logger.info("Storage initialized: %s", self.db_path)

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
