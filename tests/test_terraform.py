import pytest

from selfhosted.errors import ProvisionError
from selfhosted.terraform import (
    TerraformProvider,
    TerraformRunner,
    find_module_dir,
    format_var,
    parse_outputs,
)
from selfhosted.types import DeploymentRequest, Instance, SSHKeyPair


def test_format_var():
    assert format_var("name", "demo") == "name=demo"
    assert format_var("tags", ["a", "b"]) == 'tags=["a", "b"]'
    assert format_var("count", 2) == "count=2"
    assert format_var("public", True) == "public=true"


def test_parse_outputs():
    text = '{"id": {"value": "i-1", "type": "string"}, "ip": {"value": "203.0.113.5"}}'
    assert parse_outputs(text) == {"id": "i-1", "ip": "203.0.113.5"}
    assert parse_outputs("") == {}


def test_find_module_dir(tmp_path):
    module = tmp_path / "vultr" / "small"
    module.mkdir(parents=True)
    (module / "main.tf").write_text("")
    assert find_module_dir("vultr", "small", root=tmp_path) == module
    assert find_module_dir("vultr", root=tmp_path) is None


class FakeBase:
    name = "vultr"
    description = "Vultr"
    default_region = "ewr"
    needs_config = True
    ssh_user = "root"

    def __init__(self):
        self.destroyed = []

    def resolve_auth(self):
        return "vultr-key"

    def terraform_env(self, token):
        return {"VULTR_API_KEY": token}

    def list_regions(self):
        return ["ewr"]

    def destroy_instance(self, instance):
        self.destroyed.append(instance.id)


class FakeRunner:
    module_dir = "/modules/vultr/default"

    def __init__(self, outputs):
        self.outputs = outputs
        self.applied = []
        self.destroyed = []

    def apply(self, run_id, variables, env=None, log=None):
        self.applied.append((run_id, variables, env))
        return {**self.outputs, "_work_dir": f"/work/{run_id}"}

    def destroy(self, work_dir, env=None, log=None):
        self.destroyed.append((work_dir, env))


def make_request():
    return DeploymentRequest(
        app="demo", provider="vultr", region="ewr", size="vc2-1c-1gb",
        server_name="demo-box", ssh_keys=SSHKeyPair("private", "ssh-rsa AAAA demo"),
    )


def test_terraform_provider_creates_through_module():
    base, runner = FakeBase(), FakeRunner({"id": 1234, "ip": "203.0.113.5"})
    provider = TerraformProvider(base, runner)

    instance = provider.create_instance(make_request(), log=lambda m: None)

    assert instance.id == "1234"
    assert instance.ip == "203.0.113.5"
    assert instance.status == "provisioning"
    run_id, variables, env = runner.applied[0]
    assert run_id == "demo-box"
    assert variables == {
        "name": "demo-box",
        "region": "ewr",
        "size": "vc2-1c-1gb",
        "ssh_public_key": "ssh-rsa AAAA demo",
        "tags": ["demo", "selfhost"],
    }
    assert env == {"VULTR_API_KEY": "vultr-key"}
    # Everything else is delegated to the wrapped provider
    assert provider.list_regions() == ["ewr"]
    assert provider.description == "Vultr (Terraform)"

    provider.destroy_instance(instance)
    provider.destroy_instance(Instance(id="other", name="other"))
    assert runner.destroyed == [("/work/demo-box", {"VULTR_API_KEY": "vultr-key"})]
    assert base.destroyed == ["other"]


def test_terraform_provider_requires_id_output():
    provider = TerraformProvider(FakeBase(), FakeRunner({"ip": "203.0.113.5"}))
    with pytest.raises(ProvisionError, match="did not output an instance 'id'"):
        provider.create_instance(make_request(), log=lambda m: None)


def test_runner_reports_missing_binary(tmp_path):
    module = tmp_path / "module"
    module.mkdir()
    (module / "main.tf").write_text("")
    runner = TerraformRunner(module, work_root=tmp_path / "work", binary="terraform-not-installed")
    with pytest.raises(ProvisionError, match="not found"):
        runner.apply("run", {}, log=lambda m: None)
    assert (tmp_path / "work" / "run" / "main.tf").is_file()


def write_script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def module(tmp_path):
    module = tmp_path / "module"
    module.mkdir()
    (module / "main.tf").write_text("")
    return module


def test_runner_streams_output_and_reads_outputs(tmp_path, module):
    binary = write_script(
        tmp_path / "terraform",
        'if [ "$1" = output ]; then echo \'{"id": {"value": "i-7"}, "ip": {"value": "203.0.113.9"}}\'; '
        'else echo "$1 ok"; fi\n',
    )
    lines = []
    runner = TerraformRunner(module, work_root=tmp_path / "work", binary=binary)
    outputs = runner.apply("run", {"name": "demo"}, log=lines.append)

    assert outputs["id"] == "i-7"
    assert outputs["ip"] == "203.0.113.9"
    assert "init ok" in lines and "apply ok" in lines


def test_runner_kills_hung_command(tmp_path, module):
    binary = write_script(tmp_path / "terraform", "echo starting\nexec sleep 30\n")
    runner = TerraformRunner(module, work_root=tmp_path / "work", binary=binary, timeout=0.5)
    with pytest.raises(ProvisionError, match="terraform init timed out after 0.5s"):
        runner.apply("run", {}, log=lambda m: None)


def test_runner_reports_failure_tail(tmp_path, module):
    binary = write_script(tmp_path / "terraform", "echo 'Error: quota exceeded'\nexit 1\n")
    runner = TerraformRunner(module, work_root=tmp_path / "work", binary=binary)
    with pytest.raises(ProvisionError, match="quota exceeded"):
        runner.apply("run", {}, log=lambda m: None)
