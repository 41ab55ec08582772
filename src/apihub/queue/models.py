from __future__ import annotations

import base64
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from apihub.domain.models import Build, BuildConfig, BuildSource


@dataclass(slots=True)
class BuildTask:
    """A leased build plus everything a builder needs to run it."""

    build_id: str
    package_id: str
    version: str
    restart_count: int
    priority: int
    config: dict[str, Any] = field(default_factory=dict)
    source: bytes | None = None

    @classmethod
    def from_lease(cls, build: Build, source: BuildSource) -> "BuildTask":
        return cls(
            build_id=build.build_id,
            package_id=build.package_id,
            version=build.version,
            restart_count=build.restart_count,
            priority=build.priority,
            config=source.config.to_json_dict(),
            source=source.source,
        )

    @property
    def build_config(self) -> BuildConfig:
        return BuildConfig.model_validate(self.config)

    def to_message_body(self) -> str:
        data = asdict(self)
        if self.source is not None:
            data["source"] = base64.b64encode(self.source).decode("ascii")
        return json.dumps({k: v for k, v in data.items() if v is not None}, separators=(",", ":"))

    @classmethod
    def from_message_body(cls, body: str) -> "BuildTask":
        data = json.loads(body)
        if data.get("source") is not None:
            data["source"] = base64.b64decode(data["source"])
        return cls(**data)
