"""
Settlement feature package.

This vertical slice keeps every layer related to session escrow, referral
rewards and job-offer bonuses co-located (domain models, repository,
services, jobs, API routers) so contributors can navigate the feature
without hunting through global folders.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as settlement_router  # noqa: F401
from .api.webhooks import router as webhook_router  # noqa: F401
from .domain.models import JobOffer, Referral, Session  # noqa: F401
from .services import build_settlement_services, get_settlement_services  # noqa: F401
