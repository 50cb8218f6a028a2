from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .agents import AgentRepo
from .capabilities import CapabilityRepo
from .requests import RequestRepo
from .matches import MatchRepo
from .transactions import TransactionRepo
from .verifications import VerificationRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "AgentRepo",
    "CapabilityRepo",
    "RequestRepo",
    "MatchRepo",
    "TransactionRepo",
    "VerificationRepo",
    "StorageManager",
]
