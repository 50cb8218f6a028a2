"""
server.py - Marketplace server entry point.

Single-process server combining:
 - SQLite persistent storage via StorageManager
 - Marketplace services (discovery, matcher, payments, verification, reputation)
 - Stripe payments, or an embedded payment processor simulator
 - REST API (FastAPI on uvicorn, port 8080)

Usage:
    python -m marketplace.server [--api-port 8080] [--db-path data/marketplace.db]

Every flag falls back to an environment variable (MARKET_API_PORT,
MARKET_DB_PATH, JWT_SECRET, WEBHOOK_SECRET, STRIPE_SECRET_KEY, LOG_LEVEL).
With a Stripe key payments go through Stripe; otherwise the embedded
simulator handles them.
"""

import argparse
import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace import __version__
from marketplace.agents import AgentService
from marketplace.auth import AuthService
from marketplace.catalog import CapabilityService, RequestService
from marketplace.discovery import DiscoveryEngine
from marketplace.errors import MarketError
from marketplace.matcher import MatchController
from marketplace.payment_simulator import PaymentSimulator
from marketplace.payments import PaymentController
from marketplace.processor import PaymentProcessor, StripeProcessor
from marketplace.reputation import ReputationAggregator
from marketplace.responses import format_error
from marketplace.routers import register_all_routers
from marketplace.storage import StorageManager
from marketplace.verification import VerificationController

logger = logging.getLogger("server")

LOG_FORMAT = "%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s"


class PlatformServer:
    """Marketplace REST API with its storage and services."""

    def __init__(
        self,
        api_port: int = 8080,
        db_path: str = "data/marketplace.db",
        host: str = "0.0.0.0",
        jwt_secret: str = "",
        webhook_secret: str = "",
        stripe_secret_key: str = "",
        processor: Optional[PaymentProcessor] = None,
    ):
        self.api_port = api_port
        self.db_path = db_path
        self.host = host
        self._jwt_secret = jwt_secret
        self._started_at = time.time()

        # Processor is synchronous to build; storage + services start in _init_services()
        if processor is not None:
            self.processor = processor
        elif stripe_secret_key:
            self.processor = StripeProcessor(stripe_secret_key, webhook_secret)
        else:
            self.processor = PaymentSimulator(webhook_secret=webhook_secret)

        self.storage: Optional[StorageManager] = None
        self.auth: Optional[AuthService] = None
        self.agents: Optional[AgentService] = None
        self.capabilities: Optional[CapabilityService] = None
        self.requests: Optional[RequestService] = None
        self.discovery: Optional[DiscoveryEngine] = None
        self.matcher: Optional[MatchController] = None
        self.reputation: Optional[ReputationAggregator] = None
        self.payments: Optional[PaymentController] = None
        self.verification: Optional[VerificationController] = None

        self.app = FastAPI(title="Compute Marketplace", version=__version__, lifespan=self._lifespan)
        self.app.state.server = self
        self._register_handlers()
        self._register_routes()
        register_all_routers(self.app)

        if isinstance(self.processor, PaymentSimulator):
            self.processor.register_routes(self.app)
            logger.info("Payment simulator embedded on marketplace server")

    async def _init_services(self):
        """Open storage and wire up services (must be called in async context)."""
        self.storage = StorageManager(self.db_path)
        await self.storage.initialize()

        self.auth = AuthService(self.storage.agents, jwt_secret=self._jwt_secret)
        self.agents = AgentService(self.storage.agents, self.auth)
        self.capabilities = CapabilityService(self.storage.capabilities)
        self.requests = RequestService(self.storage.requests, self.storage.matches)
        self.discovery = DiscoveryEngine(self.storage.capabilities)
        self.matcher = MatchController(
            self.discovery, self.storage.requests, self.storage.matches,
            self.storage.capabilities, self.storage.transactions,
        )
        self.reputation = ReputationAggregator(
            self.storage.agents, self.storage.requests, self.storage.matches,
            self.storage.transactions, self.storage.verifications,
        )
        self.payments = PaymentController(
            self.processor, self.storage.transactions, self.storage.matches,
            self.storage.agents, self.reputation,
        )
        self.verification = VerificationController(
            self.storage.verifications, self.storage.transactions, self.storage.matches,
            self.storage.requests, self.payments,
        )
        logger.info("Services initialized (db=%s)", self.db_path)

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.storage is None:
            await self._init_services()
        try:
            yield
        finally:
            await self.close()

    async def close(self):
        if self.storage:
            await self.storage.close()
            self.storage = None

    # -------------------------------------------------------------------
    # Error envelopes
    # -------------------------------------------------------------------

    def _register_handlers(self):
        app = self.app

        @app.exception_handler(MarketError)
        async def market_error(request, exc: MarketError):
            if exc.status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            return JSONResponse(
                status_code=exc.status_code,
                content=format_error(exc.message, exc.status_code, exc.to_dict()),
            )

        @app.exception_handler(RequestValidationError)
        async def validation_error(request, exc: RequestValidationError):
            errors = [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
                for e in exc.errors()
            ]
            return JSONResponse(status_code=400, content=format_error("Invalid request", 400, errors))

        @app.exception_handler(StarletteHTTPException)
        async def http_error(request, exc: StarletteHTTPException):
            return JSONResponse(
                status_code=exc.status_code,
                content=format_error(str(exc.detail), exc.status_code),
                headers=getattr(exc, "headers", None),
            )

    # -------------------------------------------------------------------
    # Service endpoints
    # -------------------------------------------------------------------

    def _register_routes(self):
        app = self.app

        @app.get("/health")
        async def health():
            return {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                "uptime": round(time.time() - self._started_at, 3),
            }

        @app.get("/api/v1/info")
        async def info():
            return {
                "name": "Compute Marketplace",
                "version": __version__,
                "description": "Coordination backend for GPU compute trading",
            }

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Start storage, services, and the API server."""
        await self._init_services()
        config = uvicorn.Config(self.app, host=self.host, port=self.api_port, log_level="info")
        logger.info("REST API starting on port %d", self.api_port)
        await uvicorn.Server(config).serve()


def build_parser() -> argparse.ArgumentParser:
    env = os.environ
    parser = argparse.ArgumentParser(description="Compute Marketplace Server")
    parser.add_argument("--host", default=env.get("MARKET_HOST", "0.0.0.0"), help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--api-port", type=int, default=int(env.get("MARKET_API_PORT", "8080")),
                        help="REST API port (default: 8080)")
    parser.add_argument("--db-path", default=env.get("MARKET_DB_PATH", "data/marketplace.db"),
                        help="SQLite database path (default: data/marketplace.db)")
    parser.add_argument("--jwt-secret", default=env.get("JWT_SECRET", ""),
                        help="HS256 signing secret (default: ephemeral)")
    parser.add_argument("--webhook-secret", default=env.get("WEBHOOK_SECRET", ""),
                        help="Payment webhook signing secret (default: ephemeral)")
    parser.add_argument("--stripe-secret-key", default=env.get("STRIPE_SECRET_KEY", ""),
                        help="Stripe API key; without one the embedded payment simulator is used")
    parser.add_argument("--log-level", default=env.get("LOG_LEVEL", "INFO"),
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper,
                        help="Log level (default: INFO)")
    return parser


def main(argv=None):
    """CLI entry point for the marketplace server."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT, datefmt="%H:%M:%S")

    server = PlatformServer(
        api_port=args.api_port, db_path=args.db_path, host=args.host,
        jwt_secret=args.jwt_secret, webhook_secret=args.webhook_secret,
        stripe_secret_key=args.stripe_secret_key,
    )

    logger.info("=" * 60)
    logger.info("  Compute Marketplace Server")
    logger.info("  REST API:    http://localhost:%d", args.api_port)
    logger.info("  Database:    %s", args.db_path)
    logger.info("  Payments:    %s", "Stripe" if args.stripe_secret_key else "simulator")
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
