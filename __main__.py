import os

import pulumi
from awsfargate import AWSResourceBuilder
from config import load_config, parse_config
from debugger import should_wait_for_debugger, wait_for_debugger

CONFIG_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.yaml")


def main():
    if should_wait_for_debugger():
        wait_for_debugger()

    config = parse_config(load_config(CONFIG_FILE))

    try:
        builder = AWSResourceBuilder(config)
    except Exception as e:
        pulumi.log.error(f"Failed to initialize AWSResourceBuilder: {e}")
        raise

    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    for name, value in builder.outputs().items():
        pulumi.export(name, value)


if __name__ == "__main__":
    main()
