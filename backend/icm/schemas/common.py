from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    Documents stored in tenant datastores and handed to plugins are camelCase
    (runId, totalCommission, payoutStructure, ...). Python code uses the
    snake_case attribute names; either spelling is accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
