# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class Repository(BaseModel):
    """A connected source repository. Owned by the external store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    owner: str
    name: str
    default_branch: str = "main"
    install_command: str | None = None
    dev_command: str | None = None
    dev_port: int | None = None
    access_token: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"
