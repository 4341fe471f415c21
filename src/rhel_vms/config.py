"""VM creation parameters.

CreateVmParams is built from the form values the UI sends (keys such as
``macadam.factory.machine.name``) or from Python keyword names.

Example:
    ```python
    params = CreateVmParams.from_params({
        "macadam.factory.machine.name": "rhel",
        "macadam.factory.machine.image": "RHEL 10",
        "macadam.factory.machine.register": True,
    })
    ```
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rhel_vms import constants
from rhel_vms.models import ContainerProvider
from rhel_vms.utils import verify_container_provider


class CreateVmParams(BaseModel):
    """Validated creation request.

    Attributes:
        name: Machine name; macadam picks a default when None.
        image: Catalog image name, the ``local image on disk`` sentinel, or an
            absolute path to an image file. None means the explicit
            image_path when given, else the default catalog image.
        image_path: Explicit image file, used with the local sentinel or
            when no image is selected.
        force_download: Re-download a catalog image even when cached.
        register_subscription: Register the machine with the subscription
            service once it is observed running.
        win_provider: Explicit provider override; unknown values are ignored.
        ssh_identity_path: SSH key macadam should install for the remote user.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    name: str | None = Field(default=None, alias=constants.PARAM_NAME)
    image: str | None = Field(default=None, alias=constants.PARAM_IMAGE)
    image_path: Path | None = Field(default=None, alias=constants.PARAM_IMAGE_PATH)
    force_download: bool = Field(default=False, alias=constants.PARAM_FORCE_DOWNLOAD)
    register_subscription: bool = Field(default=False, alias=constants.PARAM_REGISTER)
    win_provider: ContainerProvider | None = Field(default=None, alias=constants.PARAM_WIN_PROVIDER)
    ssh_identity_path: Path | None = Field(default=None, alias=constants.PARAM_SSH_IDENTITY_PATH)

    @field_validator("name", "image", "image_path", "ssh_identity_path", mode="before")
    @classmethod
    def _empty_is_none(cls, value: Any) -> Any:
        return None if value == "" else value

    @field_validator("win_provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> ContainerProvider | None:
        return verify_container_provider(value)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> CreateVmParams:
        """Build from raw form values.

        Raises:
            TypeError: The image selector is present but not a string
        """
        image = params.get(constants.PARAM_IMAGE, params.get("image"))
        if image is not None and not isinstance(image, str):
            raise TypeError(f"image must be a string, got {type(image).__name__}")
        return cls.model_validate(dict(params))

    @property
    def uses_local_image(self) -> bool:
        """True when the backend should get image_path verbatim, bypassing the cache."""
        if self.image == constants.IMAGE_LOCAL:
            return True
        return self.image is None and self.image_path is not None

    @property
    def raw_image_path(self) -> Path | None:
        """The selector itself, when it is an absolute path rather than a catalog name."""
        if self.image is None or self.image == constants.IMAGE_LOCAL:
            return None
        candidate = Path(self.image)
        return candidate if candidate.is_absolute() else None

    @property
    def catalog_image(self) -> str:
        return self.image or constants.DEFAULT_IMAGE
