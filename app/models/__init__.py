from app.models.channel_mapping import ChannelMapping  # noqa: F401
from app.models.instance import Instance, InstanceStatus  # noqa: F401
from app.models.integration import (  # noqa: F401
    ConnectorState,
    Integration,
    IntegrationPlatform,
)
from app.models.linking_token import LinkingToken  # noqa: F401
