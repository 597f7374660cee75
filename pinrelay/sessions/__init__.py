from .in_memory import InMemorySessionRegistry
from .models import (
    SESSION_TTL,
    ClaimOutcome,
    ClaimResult,
    Session,
    validate_pin,
)
from .mongo import MongoSessionRegistry, PinSession
from .registry import (
    SessionRegistry,
    get_registry,
    start_registry,
    stop_registry,
)
