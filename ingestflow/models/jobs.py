"""
Job envelopes
One variant per stage queue, joined into a tagged union on ``kind``.
"""

from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _Envelope(BaseModel):
    """Common envelope config: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the JSON-safe queue payload."""
        return self.model_dump(mode="json", by_alias=True)


class IntakeJob(_Envelope):
    """Relocate an uploaded file and hand it to decomposition."""

    kind: Literal["intake"] = "intake"
    upload_id: str
    file_path: str
    mime_type: str
    original_name: str
    size_bytes: int = Field(ge=0)


class DecompositionJob(_Envelope):
    """Split a durable source file into row-chunks."""

    kind: Literal["decomposition"] = "decomposition"
    upload_id: str
    file_path: str
    mime_type: str


class RowProcessingJob(_Envelope):
    """Validate and persist the rows of one chunk."""

    kind: Literal["row_processing"] = "row_processing"
    upload_id: str
    chunk_index: int = Field(ge=0)
    chunk_path: str


Job = Annotated[
    Union[IntakeJob, DecompositionJob, RowProcessingJob],
    Field(discriminator="kind"),
]

_job_adapter: TypeAdapter[Job] = TypeAdapter(Job)


def parse_job(payload: Dict[str, Any]) -> Job:
    """Parse a queue payload back into its envelope variant."""
    return _job_adapter.validate_python(payload)
