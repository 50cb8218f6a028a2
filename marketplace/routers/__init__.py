"""Router package: collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from marketplace.routers import (
    agents,
    discovery,
    matches,
    payments,
    providers,
    requests,
    verifications,
)


def register_all_routers(app: FastAPI):
    app.include_router(agents.router)
    app.include_router(providers.router)
    app.include_router(discovery.router)
    app.include_router(requests.router)
    app.include_router(matches.router)
    app.include_router(payments.router)
    app.include_router(verifications.router)
