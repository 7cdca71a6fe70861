"""
Build orchestrator for the minimal API.

Compiles and packages the API container, downloads the pinned Pulumi CLI and
drives the Pulumi stack named after the current git branch.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from pulumi import automation as auto
from tabulate import tabulate

import buildtasks
from buildlog import LOG
from config import BuildParameters, Configuration, find_root, is_truthy
from targets import BuildError, TargetGraph

DEFAULT_TARGET = "BuildContainer"
IMAGE_NAME = "minimal-api"

CLOUD_REQUIREMENTS = [
    "aws_region",
    "aws_secret_access_key",
    "aws_access_key_id",
    "pulumi_config_passphrase",
]


class Build:
    def __init__(self, parameters: BuildParameters):
        self.parameters = parameters
        self.graph = TargetGraph(parameters)
        self.stack: Optional[auto.Stack] = None
        self._branch: Optional[str] = None
        self.register_targets()

    @property
    def root(self) -> str:
        return self.parameters.root

    @property
    def source_directory(self) -> str:
        return os.path.join(self.root, "api")

    @property
    def artifacts_directory(self) -> str:
        return os.path.join(self.root, "artifacts")

    @property
    def binary_folder(self) -> str:
        return os.path.join(self.root, "lib")

    @property
    def branch(self) -> str:
        if self._branch is None:
            self._branch = buildtasks.current_branch(self.root)
        return self._branch

    @property
    def image_tag(self) -> str:
        return f"{IMAGE_NAME}:{self.branch}"

    @property
    def image_archive(self) -> str:
        return os.path.join(self.artifacts_directory, f"minimal_api_{self.branch}.tar.gz")

    def deploying(self) -> bool:
        return self.parameters.deploy and not self.parameters.destroy

    def destroying(self) -> bool:
        return self.parameters.destroy and not self.parameters.deploy

    def previewing(self) -> bool:
        return not self.parameters.deploy and not self.parameters.destroy

    def selected_stack(self) -> auto.Stack:
        if self.stack is None:
            raise BuildError("No Pulumi stack selected, run SelectStack first")
        return self.stack

    def register_targets(self):
        graph = self.graph
        params = self.parameters

        @graph.target("Clean", before=["Restore"])
        def clean():
            """Remove compiled files and empty the artifacts directory."""
            buildtasks.delete_directories(self.source_directory, ["**/__pycache__", "**/*.egg-info"])
            buildtasks.ensure_clean_directory(self.artifacts_directory)

        @graph.target("Restore")
        def restore():
            """Install the API dependencies."""
            buildtasks.pip_install(os.path.join(self.source_directory, "requirements.txt"))

        @graph.target("Compile", depends_on=["Restore"])
        def compile_api():
            """Stamp the version and byte-compile the API sources."""
            buildtasks.write_version_file(
                os.path.join(self.source_directory, "_version.py"),
                self.branch,
                str(params.configuration),
            )
            optimize = 2 if params.configuration is Configuration.RELEASE else 0
            buildtasks.compile_sources(self.source_directory, optimize=optimize)

        @graph.target("BuildContainer", depends_on=["Compile"])
        def build_container():
            """Build the API image and save it as a tarball."""
            buildtasks.docker_build(
                path=self.root,
                dockerfile=os.path.join(self.root, "dockerfile"),
                tag=self.image_tag,
                buildargs={"CONFIGURATION": str(params.configuration)},
            )
            buildtasks.ensure_existing_directory(self.artifacts_directory)
            buildtasks.docker_save(self.image_tag, self.image_archive)

        @graph.target("DownloadPulumi", after=["Compile"])
        def download_pulumi():
            """Download and unpack the pinned Pulumi CLI."""
            buildtasks.ensure_existing_directory(self.artifacts_directory)
            filename = buildtasks.pulumi_archive_name(params.pulumi_version)
            archive = os.path.join(self.artifacts_directory, filename)
            url = buildtasks.pulumi_download_url(params.pulumi_version, filename)

            if not os.path.exists(archive):
                LOG.info(f"Downloading Pulumi binaries from {url}")
                buildtasks.download_file(url, archive)
            else:
                LOG.info(f"Binaries for Pulumi {params.pulumi_version} were already downloaded")

            if not os.path.exists(buildtasks.pulumi_executable(self.binary_folder)):
                buildtasks.ensure_clean_directory(self.binary_folder)
                buildtasks.uncompress(archive, self.binary_folder)
                LOG.info(f"Unpacked Pulumi binaries to {self.binary_folder}")
                if not sys.platform.startswith("win"):
                    buildtasks.make_executable(buildtasks.pulumi_bin_dir(self.binary_folder))
            else:
                LOG.info("The correct binaries were already unpacked")

            buildtasks.prepend_to_path(buildtasks.pulumi_bin_dir(self.binary_folder))

        @graph.target("SignIn", depends_on=["DownloadPulumi"], requires=CLOUD_REQUIREMENTS)
        def sign_in():
            """Export credentials and log in to the Pulumi backend."""
            os.environ["PULUMI_CONFIG_PASSPHRASE"] = params.pulumi_config_passphrase
            os.environ["AWS_ACCESS_KEY_ID"] = params.aws_access_key_id
            os.environ["AWS_SECRET_ACCESS_KEY"] = params.aws_secret_access_key
            os.environ["AWS_REGION"] = params.aws_region
            if params.pulumi_access_token:
                os.environ["PULUMI_ACCESS_TOKEN"] = params.pulumi_access_token
            buildtasks.pulumi_login(self.root, params.pulumi_access_token)

        @graph.target("SelectStack", depends_on=["SignIn"])
        def select_stack():
            """Create or select the stack named after the current branch."""
            os.environ["Root"] = self.root
            os.environ["Configuration"] = str(params.configuration)
            if params.pulumi_debug:
                os.environ["PULUMI_DEBUG"] = "true"
            else:
                os.environ.pop("PULUMI_DEBUG", None)
            self.stack = buildtasks.create_or_select_stack(self.branch, self.root)
            self.stack.set_config("aws:region", auto.ConfigValue(value=params.aws_region))

        @graph.target("Preview", depends_on=["SelectStack"], requires=CLOUD_REQUIREMENTS, only_when=[self.previewing])
        def preview():
            """Refresh the stack and preview pending changes."""
            stack = self.selected_stack()
            # Resources may have been removed outside of Pulumi
            stack.refresh(on_output=LOG.info)
            stack.preview(on_output=LOG.info)

        @graph.target(
            "Provision",
            depends_on=["SelectStack", "Compile"],
            requires=CLOUD_REQUIREMENTS,
            only_when=[self.deploying],
        )
        def provision():
            """Refresh the stack and deploy it."""
            stack = self.selected_stack()
            stack.refresh(on_output=LOG.info)
            result = stack.up(on_output=LOG.info)
            for name, output in result.outputs.items():
                LOG.info(f"{name}: {'[secret]' if output.secret else output.value}")

        @graph.target("Deprovision", depends_on=["SelectStack"], requires=CLOUD_REQUIREMENTS, only_when=[self.destroying])
        def deprovision():
            """Destroy every resource of the stack."""
            self.selected_stack().destroy(on_output=LOG.info)

    def run(self, targets: List[str], skip: List[str] = ()):
        return self.graph.execute(targets, skip)


def main_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="minimal-api-build",
        description="Build, package and deploy the minimal API.",
    )
    parser.add_argument(
        "targets",
        nargs="*",
        default=[DEFAULT_TARGET],
        metavar="TARGET",
        help=f"Targets to execute. Defaults to {DEFAULT_TARGET}",
    )
    parser.add_argument(
        "--configuration",
        type=Configuration.parse,
        default=os.environ.get("Configuration") or Configuration.default(),
        help="Configuration to build - Default is 'Debug' (local) or 'Release' (server)",
    )
    parser.add_argument("--aws-access-key-id", default=os.environ.get("AWS_ACCESS_KEY_ID"))
    parser.add_argument("--aws-secret-access-key", default=os.environ.get("AWS_SECRET_ACCESS_KEY"))
    parser.add_argument("--aws-region", default=os.environ.get("AWS_REGION", "eu-west-1"))
    parser.add_argument(
        "--pulumi-version",
        default=os.environ.get("PULUMI_VERSION", "v3.43.1"),
        help="The version of Pulumi to download and use",
    )
    parser.add_argument("--pulumi-config-passphrase", default=os.environ.get("PULUMI_CONFIG_PASSPHRASE"))
    parser.add_argument("--pulumi-access-token", default=os.environ.get("PULUMI_ACCESS_TOKEN"))
    parser.add_argument("--deploy", action="store_true", help="Deploy the stack")
    parser.add_argument("--destroy", action="store_true", help="Destroy the stack")
    parser.add_argument(
        "--pulumi-debug",
        action=argparse.BooleanOptionalAction,
        default=is_truthy(os.environ.get("PULUMI_DEBUG")),
        help="Make the Pulumi program wait for a debugger before deploying",
    )
    parser.add_argument(
        "--root",
        default=os.environ.get("Root"),
        help="Repository root holding Pulumi.yaml. Defaults to the closest parent of the working directory that has one",
    )
    parser.add_argument("--skip", nargs="+", default=[], metavar="TARGET", help="Targets to skip")
    parser.add_argument("--plan", action="store_true", help="Print the execution plan and exit")
    parser.add_argument("--list", action="store_true", help="List available targets and exit")
    parser.add_argument("--loglevel", type=str, help="Log level. Defaults to INFO", required=False)
    return parser


def parameters_from_args(args: argparse.Namespace) -> BuildParameters:
    configuration = args.configuration
    if isinstance(configuration, str):
        configuration = Configuration.parse(configuration)
    return BuildParameters(
        configuration=configuration,
        aws_access_key_id=args.aws_access_key_id,
        aws_secret_access_key=args.aws_secret_access_key,
        aws_region=args.aws_region,
        pulumi_version=args.pulumi_version,
        pulumi_config_passphrase=args.pulumi_config_passphrase,
        pulumi_access_token=args.pulumi_access_token,
        deploy=args.deploy,
        destroy=args.destroy,
        pulumi_debug=args.pulumi_debug,
        root=os.path.abspath(args.root) if args.root else find_root(),
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = main_parser()
    args = parser.parse_args(argv)
    if args.loglevel:
        level = logging.getLevelName(args.loglevel.upper())
        if isinstance(level, int):
            LOG.setLevel(level)
        else:
            parser.error(f"Log level value {args.loglevel} is invalid")

    build = Build(parameters_from_args(args))

    if args.list:
        print(
            tabulate(
                [[target.name, ", ".join(target.depends_on), target.description] for target in build.graph.targets.values()],
                ["Target", "Depends on", "Description"],
                tablefmt="rst",
            )
        )
        return 0

    try:
        if args.plan:
            for index, target in enumerate(build.graph.plan(args.targets), 1):
                print(f"{index}. {target.name}")
            return 0
        build.run(args.targets, args.skip)
    except BuildError as error:
        LOG.error(str(error))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
