from orderflow.models.base.base_model import Base
from orderflow.models.bookable import BookableEntity, StatusHistoryEntry

__all__ = ["Base", "BookableEntity", "StatusHistoryEntry"]
