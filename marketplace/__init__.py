"""
Compute Marketplace - Server Package

Coordination backend for a GPU compute marketplace: agents, provider
capabilities, compute requests, matching, escrow payments and work
verification. Includes SQLite storage, REST API and a payment processor
simulator.
"""

__version__ = "0.1.0"

__all__ = [
    "agents",
    "auth",
    "catalog",
    "deps",
    "discovery",
    "errors",
    "matcher",
    "models",
    "payment_simulator",
    "processor",
    "payments",
    "reputation",
    "responses",
    "routers",
    "server",
    "states",
    "storage",
    "verification",
]
