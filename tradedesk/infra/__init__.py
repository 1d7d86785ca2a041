from tradedesk.infra.bitget_gateway import BitgetGateway
from tradedesk.infra.supabase_store import SupabasePositionStore

__all__ = [
    "BitgetGateway",
    "SupabasePositionStore",
]
