"""Identity resolution for checkout requests

A buyer is identified by, in order:
1. a checkout token issued by the originating app (must name the requested app)
2. the auth provider's session cookie, looked up in Redis

The first strategy that yields an identity wins. When none does, the caller
gets IdentityUnresolvedError carrying every strategy's reason.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import redis

from app.core.errors import IdentityUnresolvedError
from app.db.redis import get_session_identity
from app.utils.checkout_tokens import validate_checkout_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    source: str  # 'token' or 'session'


@dataclass
class IdentityRequest:
    app: str
    token: Optional[str] = None
    session_id: Optional[str] = None


class StrategyFailed(Exception):
    """A single strategy could not produce an identity."""


IdentityStrategy = Callable[[IdentityRequest], Identity]


def token_strategy(request: IdentityRequest) -> Identity:
    if not request.token:
        raise StrategyFailed("no checkout token")
    result = validate_checkout_token(request.token)
    if not result.valid:
        raise StrategyFailed(f"checkout token rejected: {result.error}")
    if result.app != request.app:
        raise StrategyFailed(f"checkout token is for app '{result.app}', not '{request.app}'")
    return Identity(user_id=result.user_id, email=result.email, source="token")


def session_strategy(client: redis.Redis) -> IdentityStrategy:
    def resolve(request: IdentityRequest) -> Identity:
        if not request.session_id:
            raise StrategyFailed("no session cookie")
        identity = get_session_identity(client, request.session_id)
        if not identity:
            raise StrategyFailed("session expired or unknown")
        return Identity(user_id=identity["id"], email=identity["email"], source="session")
    return resolve


def default_strategies(client: redis.Redis) -> List[IdentityStrategy]:
    return [token_strategy, session_strategy(client)]


def resolve_identity(request: IdentityRequest, strategies: Sequence[IdentityStrategy]) -> Identity:
    """Run strategies in order and return the first identity found

    Raises:
        IdentityUnresolvedError: If every strategy fails
    """
    reasons = []
    for strategy in strategies:
        try:
            identity = strategy(request)
        except StrategyFailed as e:
            reasons.append(str(e))
            continue
        logger.info(f"Resolved user {identity.user_id} via {identity.source} for app {request.app}")
        return identity

    logger.info(f"Identity unresolved for app {request.app}: {'; '.join(reasons)}")
    raise IdentityUnresolvedError(reasons)
