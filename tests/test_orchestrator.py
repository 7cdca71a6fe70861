import os
from unittest.mock import MagicMock, patch

import pytest

import orchestrator
from config import BuildParameters, Configuration
from targets import MissingRequirementError, TargetStatus


@pytest.fixture
def tasks(tmp_path):
    """Replace every shell-level task so targets run without side effects."""
    with patch.object(orchestrator, "buildtasks") as mocked:
        mocked.current_branch.return_value = "feature-login"
        mocked.pulumi_archive_name.return_value = "pulumi-v3.43.1-linux-x64.tar.gz"
        mocked.pulumi_download_url.return_value = "https://example.com/pulumi.tar.gz"
        mocked.pulumi_executable.return_value = str(tmp_path / "lib" / "pulumi" / "pulumi")
        mocked.pulumi_bin_dir.return_value = str(tmp_path / "lib" / "pulumi")
        yield mocked


@pytest.fixture
def stack(tasks):
    stack = MagicMock()
    stack.up.return_value = MagicMock(
        outputs={"Public URL": MagicMock(value="http://alb.example.com/swagger/index.html", secret=False)}
    )
    tasks.create_or_select_stack.return_value = stack
    return stack


def make_build(tmp_path, **overrides):
    values = dict(
        configuration=Configuration.DEBUG,
        aws_access_key_id="AKIAEXAMPLE",
        aws_secret_access_key="secret",
        aws_region="eu-west-1",
        pulumi_config_passphrase="passphrase",
        root=str(tmp_path),
    )
    values.update(overrides)
    return orchestrator.Build(BuildParameters(**values))


def statuses(plan):
    return {target.name: target.status for target in plan}


def test_default_target_packages_the_container(tmp_path, tasks):
    build = make_build(tmp_path)
    plan = build.run([orchestrator.DEFAULT_TARGET])

    assert [t.name for t in plan] == ["Restore", "Compile", "BuildContainer"]
    tasks.compile_sources.assert_called_once_with(os.path.join(str(tmp_path), "api"), optimize=0)
    tasks.docker_build.assert_called_once_with(
        path=str(tmp_path),
        dockerfile=os.path.join(str(tmp_path), "dockerfile"),
        tag="minimal-api:feature-login",
        buildargs={"CONFIGURATION": "Debug"},
    )
    tasks.docker_save.assert_called_once_with(
        "minimal-api:feature-login",
        os.path.join(str(tmp_path), "artifacts", "minimal_api_feature-login.tar.gz"),
    )


def test_release_compiles_with_optimizations(tmp_path, tasks):
    build = make_build(tmp_path, configuration=Configuration.RELEASE)
    build.run(["Compile"])
    tasks.write_version_file.assert_called_once_with(
        os.path.join(str(tmp_path), "api", "_version.py"), "feature-login", "Release"
    )
    tasks.compile_sources.assert_called_once_with(os.path.join(str(tmp_path), "api"), optimize=2)


def test_clean_runs_before_restore(tmp_path, tasks):
    plan = make_build(tmp_path).graph.plan(["Compile", "Clean"])
    assert [t.name for t in plan] == ["Clean", "Restore", "Compile"]


def test_provision_without_credentials_makes_no_calls(tmp_path, tasks, clean_environ):
    build = make_build(tmp_path, aws_access_key_id=None, aws_secret_access_key=None, deploy=True)

    with pytest.raises(MissingRequirementError) as error:
        build.run(["Provision"])

    assert "aws_access_key_id" in error.value.missing["SignIn"]
    assert not tasks.method_calls
    assert "AWS_ACCESS_KEY_ID" not in os.environ


def test_cli_provision_without_credentials_exits_non_zero(tasks, clean_environ):
    assert orchestrator.main(["Provision", "--deploy"]) == 1
    tasks.pulumi_login.assert_not_called()
    tasks.create_or_select_stack.assert_not_called()


def test_deploy_and_destroy_together_do_nothing(tmp_path, tasks, stack, clean_environ):
    build = make_build(tmp_path, deploy=True, destroy=True)
    plan = build.run(["Provision", "Deprovision", "Preview"])

    result = statuses(plan)
    assert result["Provision"] == TargetStatus.SKIPPED
    assert result["Deprovision"] == TargetStatus.SKIPPED
    assert result["Preview"] == TargetStatus.SKIPPED
    assert result["SelectStack"] == TargetStatus.SUCCEEDED
    stack.up.assert_not_called()
    stack.destroy.assert_not_called()
    stack.preview.assert_not_called()


def test_provision_deploys_the_branch_stack(tmp_path, tasks, stack, clean_environ):
    build = make_build(tmp_path, deploy=True, pulumi_debug=True)
    plan = build.run(["Provision"])

    assert [t.name for t in plan] == [
        "Restore",
        "Compile",
        "DownloadPulumi",
        "SignIn",
        "SelectStack",
        "Provision",
    ]
    tasks.download_file.assert_called_once_with(
        "https://example.com/pulumi.tar.gz",
        os.path.join(str(tmp_path), "artifacts", "pulumi-v3.43.1-linux-x64.tar.gz"),
    )
    tasks.uncompress.assert_called_once()
    tasks.prepend_to_path.assert_called_once_with(str(tmp_path / "lib" / "pulumi"))
    tasks.pulumi_login.assert_called_once_with(str(tmp_path), None)
    tasks.create_or_select_stack.assert_called_once_with("feature-login", str(tmp_path))
    stack.set_config.assert_called_once()
    assert stack.set_config.call_args[0][0] == "aws:region"
    stack.refresh.assert_called_once()
    stack.up.assert_called_once()
    stack.destroy.assert_not_called()

    assert os.environ["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE"
    assert os.environ["AWS_REGION"] == "eu-west-1"
    assert os.environ["PULUMI_CONFIG_PASSPHRASE"] == "passphrase"
    assert os.environ["Root"] == str(tmp_path)
    assert os.environ["Configuration"] == "Debug"
    assert os.environ["PULUMI_DEBUG"] == "true"


def test_destroy_removes_the_stack(tmp_path, tasks, stack, clean_environ):
    build = make_build(tmp_path, destroy=True)
    plan = build.run(["Deprovision"])

    assert "Compile" not in [t.name for t in plan]
    stack.destroy.assert_called_once()
    stack.up.assert_not_called()


def test_preview_runs_when_no_action_requested(tmp_path, tasks, stack, clean_environ):
    make_build(tmp_path).run(["Preview"])
    stack.refresh.assert_called_once()
    stack.preview.assert_called_once()


def test_access_token_logs_in_to_the_service(tmp_path, tasks, stack, clean_environ):
    make_build(tmp_path, pulumi_access_token="pul-token").run(["SignIn"])
    tasks.pulumi_login.assert_called_once_with(str(tmp_path), "pul-token")
    assert os.environ["PULUMI_ACCESS_TOKEN"] == "pul-token"


def test_cached_pulumi_archive_is_not_downloaded_again(tmp_path, tasks, clean_environ):
    artifacts = tmp_path / "artifacts"
    artifacts.mkdir()
    (artifacts / "pulumi-v3.43.1-linux-x64.tar.gz").write_bytes(b"archive")
    binary = tmp_path / "lib" / "pulumi" / "pulumi"
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"binary")

    make_build(tmp_path).run(["DownloadPulumi"])

    tasks.download_file.assert_not_called()
    tasks.uncompress.assert_not_called()
    tasks.prepend_to_path.assert_called_once()


def test_failed_target_aborts_the_run(tmp_path, tasks, stack, clean_environ):
    tasks.pulumi_login.side_effect = RuntimeError("login failed")
    assert orchestrator.main(
        [
            "Provision",
            "--deploy",
            "--aws-access-key-id",
            "AKIAEXAMPLE",
            "--aws-secret-access-key",
            "secret",
            "--pulumi-config-passphrase",
            "passphrase",
        ]
    ) == 1
    tasks.create_or_select_stack.assert_not_called()
    stack.up.assert_not_called()


def test_parameters_default_from_environment(credentials):
    credentials.setenv("Configuration", "release")
    args = orchestrator.main_parser().parse_args([])
    params = orchestrator.parameters_from_args(args)

    assert args.targets == [orchestrator.DEFAULT_TARGET]
    assert params.configuration is Configuration.RELEASE
    assert params.aws_access_key_id == "AKIAEXAMPLE"
    assert params.aws_region == "eu-west-1"
    assert params.pulumi_version == "v3.43.1"
    assert params.deploy is False
    assert params.destroy is False


def test_server_builds_default_to_release(clean_environ):
    clean_environ.setenv("CI", "true")
    args = orchestrator.main_parser().parse_args([])
    assert orchestrator.parameters_from_args(args).configuration is Configuration.RELEASE


def test_invalid_configuration_is_a_usage_error(clean_environ):
    with pytest.raises(SystemExit) as error:
        orchestrator.main(["--configuration", "Profile"])
    assert error.value.code == 2


def test_plan_prints_without_running(tasks, clean_environ, capsys):
    assert orchestrator.main(["Deprovision", "--plan"]) == 0
    out = capsys.readouterr().out
    assert "1. DownloadPulumi" in out
    assert "3. SelectStack" in out
    assert "4. Deprovision" in out
    assert not tasks.method_calls


def test_list_shows_every_target(tasks, clean_environ, capsys):
    assert orchestrator.main(["--list"]) == 0
    out = capsys.readouterr().out
    for name in ("Clean", "Restore", "Compile", "BuildContainer", "DownloadPulumi", "SignIn", "SelectStack",
                 "Preview", "Provision", "Deprovision"):
        assert name in out


def test_unknown_target_exits_non_zero(tasks, clean_environ):
    assert orchestrator.main(["Publish"]) == 1


def test_root_comes_from_flag_or_environment(tmp_path, clean_environ):
    args = orchestrator.main_parser().parse_args(["--root", str(tmp_path)])
    assert orchestrator.parameters_from_args(args).root == str(tmp_path)

    clean_environ.setenv("Root", str(tmp_path / "checkout"))
    args = orchestrator.main_parser().parse_args([])
    assert orchestrator.parameters_from_args(args).root == str(tmp_path / "checkout")


def test_root_is_found_from_the_working_directory(tmp_path, clean_environ):
    (tmp_path / "Pulumi.yaml").write_text("name: minimal-api\n")
    (tmp_path / "api").mkdir()
    clean_environ.chdir(tmp_path / "api")

    params = orchestrator.parameters_from_args(orchestrator.main_parser().parse_args([]))

    assert os.path.realpath(params.root) == os.path.realpath(tmp_path)


def test_targets_use_the_given_root(tmp_path, tasks, clean_environ):
    assert orchestrator.main(["Compile", "--root", str(tmp_path)]) == 0
    tasks.pip_install.assert_called_once_with(os.path.join(str(tmp_path), "api", "requirements.txt"))


def test_pulumi_debug_can_be_disabled_from_the_command_line(clean_environ):
    clean_environ.setenv("PULUMI_DEBUG", "true")
    assert orchestrator.main_parser().parse_args([]).pulumi_debug is True
    assert orchestrator.main_parser().parse_args(["--no-pulumi-debug"]).pulumi_debug is False


def test_disabled_pulumi_debug_is_not_passed_to_the_program(tmp_path, tasks, stack, clean_environ):
    clean_environ.setenv("PULUMI_DEBUG", "true")
    make_build(tmp_path, pulumi_debug=False).run(["SelectStack"])
    assert "PULUMI_DEBUG" not in os.environ
