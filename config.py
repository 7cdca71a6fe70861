"""
This module defines the data structures for our configuration: the
parameters a build is invoked with, and the YAML infrastructure
declaration handed to the Pulumi program.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

REQUIRED_KEYS = ["service", "environment", "resources"]

PROJECT_FILE = "Pulumi.yaml"

TRUTHY = {"1", "true", "yes", "on"}


def is_truthy(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in TRUTHY


def is_server_build() -> bool:
    return is_truthy(os.environ.get("CI"))


def find_root(start: Optional[str] = None) -> str:
    """Closest directory holding ``Pulumi.yaml``, walking up from ``start`` (the working directory)."""
    current = os.path.abspath(start or os.getcwd())
    while True:
        if os.path.isfile(os.path.join(current, PROJECT_FILE)):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return os.path.abspath(start or os.getcwd())
        current = parent


class Configuration(str, Enum):
    DEBUG = "Debug"
    RELEASE = "Release"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def default(cls) -> "Configuration":
        return cls.RELEASE if is_server_build() else cls.DEBUG

    @classmethod
    def parse(cls, value: str) -> "Configuration":
        for member in cls:
            if member.value.lower() == value.strip().lower():
                return member
        raise ValueError(f"Unknown configuration '{value}', expected one of {[m.value for m in cls]}")


@dataclass
class BuildParameters:
    configuration: Configuration = field(default_factory=Configuration.default)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: Optional[str] = "eu-west-1"
    pulumi_version: str = "v3.43.1"
    pulumi_config_passphrase: Optional[str] = None
    pulumi_access_token: Optional[str] = None
    deploy: bool = False
    destroy: bool = False
    pulumi_debug: bool = False
    root: str = field(default_factory=find_root)


@dataclass
class AWSResource:
    name: str
    type: str
    args: Dict = field(default_factory=dict)
    custom_name: Optional[str] = None


@dataclass
class InfrastructureConfig:
    service: str
    environment: str
    resources: List[AWSResource]
    region: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    exports: Dict[str, Any] = field(default_factory=dict)


def load_config(file_path: str) -> Dict[str, Any]:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file) or {}

    for key in REQUIRED_KEYS:
        if key not in config_data:
            raise ValueError(f"Missing required configuration key: {key}")

    for index, resource in enumerate(config_data["resources"]):
        for key in ("name", "type"):
            if key not in resource:
                raise ValueError(f"Resource #{index} is missing required key: {key}")

    return config_data


def parse_config(config_data: Dict[str, Any]) -> InfrastructureConfig:
    return InfrastructureConfig(
        service=config_data["service"],
        environment=config_data["environment"],
        region=config_data.get("region"),
        tags=config_data.get("tags") or {},
        exports=config_data.get("exports") or {},
        resources=[
            AWSResource(
                name=resource["name"],
                type=resource["type"],
                args=resource.get("args") or {},
                custom_name=resource.get("custom_name"),
            )
            for resource in config_data["resources"]
        ],
    )
