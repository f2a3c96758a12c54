"""
External collaborators the payment flows need: gateways, the tracking store, the
notification sink and the risk scorer. Built once per process; tests override
`get_collaborators` with fakes.
"""

from dataclasses import dataclass
from functools import lru_cache

from feeledger.events.notifications import LoggingNotificationSink, NotificationSink
from feeledger.gateways.registry import GatewayRegistry, build_registry
from feeledger.risk.scorer import RiskScorer
from feeledger.risk.store import InMemoryTTLStore, KeyValueStore


@dataclass
class Collaborators:
    gateways: GatewayRegistry
    store: KeyValueStore
    sink: NotificationSink
    scorer: RiskScorer


def build_collaborators() -> Collaborators:
    store = InMemoryTTLStore()
    return Collaborators(
        gateways=build_registry(),
        store=store,
        sink=LoggingNotificationSink(),
        scorer=RiskScorer(store),
    )


@lru_cache
def get_collaborators() -> Collaborators:
    return build_collaborators()
