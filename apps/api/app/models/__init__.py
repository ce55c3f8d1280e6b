from app.models.billing import UserAccount, UsageRecord, CustomerMapping, Notification  # noqa: F401
