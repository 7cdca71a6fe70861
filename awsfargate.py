import os
import re
from typing import Any, Dict, Optional

import pulumi
import pulumi_aws as aws
import pulumi_awsx as awsx

from config import InfrastructureConfig

PROVIDERS = {
    "aws": aws,
    "awsx": awsx,
}

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
}

PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


def resolve_reference(ref_text: str, resources: Dict[str, Any]) -> Any:
    """Walk ``resource.attr.attr`` starting from a previously built resource."""
    ref_res, _, ref_path = ref_text.partition(".")
    if ref_res not in resources:
        raise ValueError(f"Referenced resource '{ref_res}' not found.")
    value = resources[ref_res]
    for attr in (ref_path or "id").split("."):
        value = getattr(value, attr, None)
        if value is None:
            raise ValueError(f"Attribute '{ref_path}' not found on resource '{ref_res}'")
    return value


def resolve_env(env_text: str) -> str:
    name, has_default, default = env_text.partition("|")
    value = os.environ.get(name)
    if value is None:
        if not has_default:
            raise ValueError(f"Environment variable '{name}' is not set.")
        return default
    return value


def resolve_format(template: str, resources: Dict[str, Any]) -> pulumi.Output:
    values = []

    def placeholder(match):
        values.append(resolve_value(match.group(1), resources))
        return "{%d}" % (len(values) - 1)

    return pulumi.Output.format(PLACEHOLDER.sub(placeholder, template), *values)


def resolve_value(value: Any, resources: Dict[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: resolve_value(v, resources) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, resources) for item in value]
    elif isinstance(value, str):
        if value.startswith("secret:"):
            config = pulumi.Config()
            return config.require_secret(value[len("secret:"):])
        elif value.startswith("ref:"):
            return resolve_reference(value[len("ref:"):], resources)
        elif value.startswith("env:"):
            return resolve_env(value[len("env:"):])
        elif value.startswith("format:"):
            return resolve_format(value[len("format:"):], resources)
        else:
            return value
    else:
        return value


class AWSResourceBuilder:
    def __init__(self, config: InfrastructureConfig, region: Optional[str] = None):
        self.config = config
        self.region = (
            region
            or config.region
            or os.environ.get("AWS_REGION")
            or pulumi.Config("aws").get("region")
            or "us-east-1"
        )
        self.resources: Dict[str, Any] = {}
        self.provider: Optional[aws.Provider] = None

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        service = self.config.service.strip().lower()
        env = self.config.environment.strip().lower()
        reg_abbr = self.get_abbreviation(self.region)
        return f"{service}-{env}-{reg_abbr}-{base_name}".lower()

    def resolve_args(self, args: dict) -> dict:
        return {key: resolve_value(value, self.resources) for key, value in args.items()}

    def lookup_class(self, name: str, resource_type: str):
        provider_name, _, type_path = resource_type.partition(".")
        package = PROVIDERS.get(provider_name)
        if package is None or "." not in type_path:
            pulumi.log.warn(f"Unsupported resource type '{resource_type}'. Skipping '{name}'.")
            return None
        module_name, class_name = type_path.rsplit(".", 1)
        module = getattr(package, module_name, None)
        if not module:
            pulumi.log.warn(f"Module '{provider_name}.{module_name}' not found. Skipping '{name}'.")
            return None
        try:
            return getattr(module, class_name)
        except AttributeError:
            pulumi.log.warn(
                f"Resource class '{class_name}' not found in module '{provider_name}.{module_name}'. Skipping '{name}'."
            )
            return None

    def create_provider(self) -> Optional[aws.Provider]:
        """An explicit provider is only needed to pin the region or add default tags."""
        if not self.config.tags and not self.config.region:
            return None
        default_tags = aws.ProviderDefaultTagsArgs(tags=self.config.tags) if self.config.tags else None
        return aws.Provider(
            self.generate_resource_name("provider"),
            region=self.region,
            default_tags=default_tags,
        )

    def resource_options(self) -> Optional[pulumi.ResourceOptions]:
        if self.provider is None:
            return None
        return pulumi.ResourceOptions(providers={"aws": self.provider})

    def build(self):
        self.provider = self.create_provider()
        for resource_cfg in self.config.resources:
            ResourceClass = self.lookup_class(resource_cfg.name, resource_cfg.type)
            if ResourceClass is None:
                continue
            resolved_args = self.resolve_args(resource_cfg.args)
            resolved_args.pop("opts", None)
            pulumi_name = resource_cfg.custom_name or self.generate_resource_name(resource_cfg.name)
            pulumi.log.debug(f"Resolved arguments for '{resource_cfg.name}': {sorted(resolved_args)}")
            resource_instance = ResourceClass(pulumi_name, opts=self.resource_options(), **resolved_args)
            self.resources[resource_cfg.name] = resource_instance
            pulumi.log.info(f"Created resource: {pulumi_name} ({resource_cfg.type})")

    def outputs(self) -> Dict[str, Any]:
        return {key: resolve_value(value, self.resources) for key, value in self.config.exports.items()}
