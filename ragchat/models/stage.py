from typing import Annotated, Literal, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ragchat.core.errors import InvalidStagePayload

class _StrictPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

class ParsePayload(_StrictPayload):
    stage: Literal["parse"]
    job_id: str = Field(min_length=1)

class EmbedPayload(_StrictPayload):
    stage: Literal["embed"]
    job_id: str = Field(min_length=1)

StagePayload = Annotated[Union[ParsePayload, EmbedPayload], Field(discriminator="stage")]

_adapter = TypeAdapter(StagePayload)

def parse_stage_payload(data: object) -> ParsePayload | EmbedPayload:
    """Validates a raw stage payload, rejecting unknown stages and extra or missing fields."""
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidStagePayload(str(e)) from e
