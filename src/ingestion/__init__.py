"""Source connectors and guarded discovery."""

from src.ingestion.connector_registry import ConnectorRegistry
from src.ingestion.eventbrite_connector import EventbriteConnector
from src.ingestion.rate_limiter import TokenBucketRateLimiter
from src.ingestion.source_connector import (
    ConnectorConfig,
    DiscoveryPage,
    EventbriteDescriptor,
    ExtractedFields,
    GenericConnector,
    SearchDescriptor,
    SourceConnector,
    TicketmasterDescriptor,
    YelpDescriptor,
)
from src.ingestion.source_gateway import DiscoveryResult, SourceGateway
from src.ingestion.ticketmaster_connector import TicketmasterConnector
from src.ingestion.yelp_connector import YelpConnector

__all__ = [
    "ConnectorConfig",
    "ConnectorRegistry",
    "DiscoveryPage",
    "DiscoveryResult",
    "EventbriteConnector",
    "EventbriteDescriptor",
    "ExtractedFields",
    "GenericConnector",
    "SearchDescriptor",
    "SourceConnector",
    "SourceGateway",
    "TicketmasterConnector",
    "TicketmasterDescriptor",
    "TokenBucketRateLimiter",
    "YelpConnector",
    "YelpDescriptor",
]
