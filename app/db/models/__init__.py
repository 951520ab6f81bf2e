from .inventory_exec import *  # noqa
from .docs import *  # noqa
from .security_audit import *  # noqa
from .wms.tasking import *  # noqa
from .wms.counting import *  # noqa

# Platform event-bus table (transactional outbox)
from app.events.outbox import OutboxEvent  # noqa
