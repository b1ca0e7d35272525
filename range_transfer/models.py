"""Progress events and validated option sets for the high level transfer calls."""

from typing import Any
from typing import Callable
from typing import Optional
from typing import Type
from typing import TypeVar

import pydantic
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from range_transfer.config import FILE_RANGE_MAX_SIZE_BYTES
from range_transfer.errors import ValidationError


M = TypeVar("M", bound=BaseModel)


class TransferProgress(BaseModel):
    loaded_bytes: int


ProgressCallback = Callable[[TransferProgress], None]


class _StrictOptions(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)


class UploadOptions(_StrictOptions):
    range_size: int = Field(gt=0, le=FILE_RANGE_MAX_SIZE_BYTES)
    parallelism: int = Field(gt=0)


class DownloadOptions(_StrictOptions):
    offset: int = Field(ge=0)
    count: Optional[int] = Field(default=None, gt=0)
    max_retry_requests: int = Field(ge=0)


class DownloadToBufferOptions(_StrictOptions):
    offset: int = Field(ge=0)
    count: Optional[int] = Field(default=None, gt=0)
    range_size: int = Field(gt=0)
    parallelism: int = Field(gt=0)
    max_retry_requests_per_range: int = Field(ge=0)


class StreamUploadOptions(_StrictOptions):
    size: int = Field(ge=0)
    buffer_size: int = Field(gt=0, le=FILE_RANGE_MAX_SIZE_BYTES)
    max_buffers: int = Field(gt=0)


def validate_options(model: Type[M], **values: Any) -> M:
    """Build an option model, turning pydantic failures into our ValidationError."""
    try:
        return model.model_validate(values)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {details}") from e
