from db.models.business import (
    Business,
    BusinessToEnrich,
    BusinessToScrape,
    EmailToVerify,
    ExportRow,
    NewBusiness,
)
from db.models.job import Job
from db.models.user import User

__all__ = [
    "Business",
    "BusinessToEnrich",
    "BusinessToScrape",
    "EmailToVerify",
    "ExportRow",
    "NewBusiness",
    "Job",
    "User",
]
