"""
Base schemas shared by the discovery models.
"""
from pydantic import BaseModel, ConfigDict


class StandardizedModel(BaseModel):
    """Base model with standardized JSON encoding"""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)
