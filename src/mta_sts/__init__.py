"""MTA-STS policy server with gated on-demand certificate issuance."""

from .attempt_store import (
    AttemptStore,
    FileAttemptStore,
    RedisAttemptStore,
    SqliteAttemptStore,
    create_attempt_store,
    sanitize_hostname,
)
from .host_policy import (
    CnameHostPolicy,
    HostDecision,
    HostPolicy,
    WhitelistHostPolicy,
    create_host_policy,
)
from .sts_policy import (
    LocalStsPolicy,
    MirrorStsPolicy,
    StsPolicyProvider,
    create_policy_provider,
    render_sts_policy,
)

__all__ = [
    "AttemptStore",
    "FileAttemptStore",
    "RedisAttemptStore",
    "SqliteAttemptStore",
    "create_attempt_store",
    "sanitize_hostname",
    "CnameHostPolicy",
    "HostDecision",
    "HostPolicy",
    "WhitelistHostPolicy",
    "create_host_policy",
    "LocalStsPolicy",
    "MirrorStsPolicy",
    "StsPolicyProvider",
    "create_policy_provider",
    "render_sts_policy",
]
