"""
GlobalConnect — core/schemas.py
─────────────────────────────────────────────────────────────────
Request body base: the web client sends camelCase, Python reads
snake_case. Every request model extends ApiModel.
─────────────────────────────────────────────────────────────────
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
