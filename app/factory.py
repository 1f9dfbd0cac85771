from app.config import Settings, settings
from app.db.session import create_session_factory
from app.db.store import SqlStore
from petmeds import DoseFlow
from services.notifier.outbound import PushGatewayNotifier


def build_flow(config: Settings = settings) -> DoseFlow:
    store = SqlStore(create_session_factory(config.DATABASE_URL))
    notifier = PushGatewayNotifier(config.PUSH_GATEWAY_URL, timeout=config.PUSH_GATEWAY_TIMEOUT_SECONDS)
    return DoseFlow(store, notifier, **config.flow_options())
