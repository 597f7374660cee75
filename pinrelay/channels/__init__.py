from pinrelay.channels.backplane import (
    BackplaneBase,
    InMemoryBackplane,
    RedisBackplane,
)
from pinrelay.channels.connections import (
    Connection,
    ConnectionManager,
    Frame,
    get_connection_manager,
)
