from functools import lru_cache

from fastapi import Depends

from app.services.billing import BillingService
from app.services.billing_events import BillingEventIngestor
from app.services.processor import StripeProcessor


@lru_cache
def get_processor() -> StripeProcessor:
    return StripeProcessor()


def get_billing_service(processor: StripeProcessor = Depends(get_processor)) -> BillingService:
    return BillingService(processor=processor)


@lru_cache
def get_event_ingestor() -> BillingEventIngestor:
    return BillingEventIngestor()
