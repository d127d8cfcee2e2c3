"""ORM models package -- re-exports all models and the Base class."""

from timehug.models.base import Base
from timehug.models.profile import CreditTransaction, Profile
from timehug.models.generation import Generation, Template

__all__ = [
    "Base",
    "Profile",
    "CreditTransaction",
    "Template",
    "Generation",
]
