"""Unit tests for TerraformReferenceResolver against real directory trees."""

from __future__ import annotations

import logging
import shutil
import textwrap
from collections import Counter
from pathlib import Path

import pytest

from src.core.config import ResolverSettings
from src.core.exceptions import FileAccessError
from src.core.file_accessor import LocalFileAccessor
from src.plugins.terraform.resolver import TerraformReferenceResolver


def write(root: Path, relative: str, content: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")
    return path


# -------- Accessor doubles --------


class CountingAccessor(LocalFileAccessor):
    """Counts file reads by file name."""

    def __init__(self) -> None:
        super().__init__()
        self.reads: Counter[str] = Counter()

    async def read_text(self, path: Path) -> str:
        self.reads[path.name] += 1
        return await super().read_text(path)


class UnreadableDirectoryAccessor(LocalFileAccessor):
    """Fails every read below directories with a given name."""

    def __init__(self, directory_name: str) -> None:
        super().__init__()
        self.directory_name = directory_name

    async def read_text(self, path: Path) -> str:
        if path.parent.name == self.directory_name:
            raise FileAccessError("Permission denied", path=path, operation="read")
        return await super().read_text(path)


class ExplodingAccessor(LocalFileAccessor):
    async def list_entries(self, path: Path) -> list[str]:
        raise RuntimeError("boom")


# ------------------------- Fixtures -------------------------


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def resolver(workspace: Path) -> TerraformReferenceResolver:
    return TerraformReferenceResolver(workspace)


@pytest.fixture
def locals_tree(workspace: Path) -> Path:
    write(
        workspace,
        "locals.tf",
        """
        locals {
          env    = "prod"
          prefix = "${local.env}-app"
          tags = {
            Name = local.prefix
            Team = "platform"
          }
        }
        """,
    )
    return workspace


@pytest.fixture
def module_tree(workspace: Path) -> Path:
    write(
        workspace,
        "main.tf",
        """
        module "network" {
          source = "./modules/network"
          cidr   = "10.0.0.0/16"
        }

        module "remote" {
          source = "git::https://example.com/modules.git"
        }
        """,
    )
    write(
        workspace,
        "modules/network/outputs.tf",
        """
        output "vpc_cidr" {
          value = var.cidr
        }
        """,
    )
    write(
        workspace,
        "modules/network/variables.tf",
        """
        variable "cidr" {
          default = "172.16.0.0/12"
        }
        """,
    )
    return workspace


# ------------------------- Tests -------------------------


class TestOverrideFiles:
    @pytest.mark.asyncio
    async def test_tfvars_value_and_refresh_after_invalidation(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        tfvars = write(workspace, "env/prod.tfvars", 'region = "us-east-1"\n')
        write(workspace, "env/main.tf", 'provider "aws" {\n  region = var.region\n}\n')
        env = workspace / "env"

        assert await resolver.resolve("region", env) == '"us-east-1"'

        tfvars.write_text('region = "eu-west-1"\n')
        # Still served from the cache until told about the change
        assert await resolver.resolve("region", env) == '"us-east-1"'

        assert resolver.on_file_changed(tfvars) > 0
        assert await resolver.resolve("region", env) == '"eu-west-1"'

    @pytest.mark.asyncio
    async def test_override_file_wins_over_locals(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "terraform.tfvars", 'name = "from-tfvars"\n')
        write(workspace, "locals.tf", 'locals {\n  name = "from-locals"\n}\n')

        assert await resolver.resolve("var.name", workspace) == '"from-tfvars"'
        assert await resolver.resolve("local.name", workspace) == '"from-locals"'

    @pytest.mark.asyncio
    async def test_override_files_read_alphabetically(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "b.tfvars", "size = 2\n")
        write(workspace, "a.auto.tfvars", "size = 1\n")
        assert await resolver.resolve("var.size", workspace) == "1"

    @pytest.mark.asyncio
    async def test_json_tfvars(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(
            workspace,
            "terraform.tfvars.json",
            '{"instance_count": 3, "tags": {"team": "infra"}}',
        )
        assert await resolver.resolve("var.instance_count", workspace) == "3"
        assert await resolver.resolve("var.tags.team", workspace) == '"infra"'

    @pytest.mark.asyncio
    async def test_malformed_json_tfvars_is_skipped(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "a.tfvars.json", "{broken")
        write(workspace, "b.tfvars", "size = 2\n")
        assert await resolver.resolve("var.size", workspace) == "2"


class TestNestedResolution:
    @pytest.mark.asyncio
    async def test_interpolated_local(
        self, resolver: TerraformReferenceResolver, locals_tree: Path
    ) -> None:
        assert await resolver.resolve("local.prefix", locals_tree) == '"prod-app"'

    @pytest.mark.asyncio
    async def test_object_value_substituted(
        self, resolver: TerraformReferenceResolver, locals_tree: Path
    ) -> None:
        value = await resolver.resolve("local.tags", locals_tree)
        assert value.startswith("{")
        assert 'Name = "prod-app"' in value

    @pytest.mark.asyncio
    async def test_property_path_on_reference(
        self, resolver: TerraformReferenceResolver, locals_tree: Path
    ) -> None:
        assert await resolver.resolve("local.tags.Name", locals_tree) == '"prod-app"'
        assert await resolver.resolve("local.tags.Missing", locals_tree) is None

    @pytest.mark.asyncio
    async def test_resolve_property(
        self, resolver: TerraformReferenceResolver, locals_tree: Path
    ) -> None:
        assert (
            await resolver.resolve_property("local.tags", "Team", locals_tree)
            == '"platform"'
        )
        assert await resolver.resolve_property("local.absent", "Team", locals_tree) is None

    @pytest.mark.asyncio
    async def test_unresolved_part_kept_in_partial_value(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "locals.tf", 'locals {\n  name = "${var.unknown}-${local.x}"\n  x = "a"\n}\n')
        assert await resolver.resolve("local.name", workspace) == '"${var.unknown}-a"'

    @pytest.mark.asyncio
    async def test_data_attribute(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(
            workspace,
            "data.tf",
            """
            data "aws_ami" "ubuntu" {
              most_recent = true
              name_regex  = "^ubuntu-${var.release}"
            }

            variable "release" { default = "22.04" }
            """,
        )
        assert (
            await resolver.resolve("data.aws_ami.ubuntu.name_regex", workspace)
            == '"^ubuntu-22.04"'
        )
        assert await resolver.resolve("data.aws_ami.ubuntu.id", workspace) is None


class TestSearchOrder:
    @pytest.mark.asyncio
    async def test_parent_fallback(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "variables.tf", 'variable "owner" {\n  default = "platform"\n}\n')
        write(workspace, "app/main.tf", "# nothing here\n")

        assert await resolver.resolve("var.owner", workspace / "app") == '"platform"'

    @pytest.mark.asyncio
    async def test_fallback_stops_at_workspace_boundary(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace.parent, "outside.tf", 'locals {\n  secret = "leaked"\n}\n')
        assert await resolver.resolve("local.secret", workspace) is None

    @pytest.mark.asyncio
    async def test_nearest_declaration_wins(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "locals.tf", 'locals {\n  env = "root"\n}\n')
        write(workspace, "app/locals.tf", 'locals {\n  env = "app"\n}\n')
        assert await resolver.resolve("local.env", workspace / "app") == '"app"'

    @pytest.mark.asyncio
    async def test_output_of_current_directory(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "outputs.tf", 'output "endpoint" {\n  value = "db.internal"\n}\n')
        assert await resolver.resolve("endpoint", workspace) == '"db.internal"'


class TestModules:
    @pytest.mark.asyncio
    async def test_module_output_uses_module_default(
        self, resolver: TerraformReferenceResolver, module_tree: Path
    ) -> None:
        assert (
            await resolver.resolve("module.network.vpc_cidr", module_tree)
            == '"172.16.0.0/12"'
        )

    @pytest.mark.asyncio
    async def test_module_output_threads_call_site_argument(
        self, resolver: TerraformReferenceResolver, module_tree: Path
    ) -> None:
        assert (
            await resolver.resolve_with_module_inputs("module.network.vpc_cidr", module_tree)
            == '"10.0.0.0/16"'
        )

    @pytest.mark.asyncio
    async def test_unknown_and_remote_modules(
        self, resolver: TerraformReferenceResolver, module_tree: Path
    ) -> None:
        assert await resolver.resolve("module.absent.vpc_cidr", module_tree) is None
        assert await resolver.resolve("module.remote.anything", module_tree) is None
        assert await resolver.resolve("module.network.absent", module_tree) is None

    @pytest.mark.asyncio
    async def test_input_threaded_from_parent_call_site(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(
            workspace,
            "stack/main.tf",
            """
            variable "env_size" {
              default = "large"
            }

            module "child" {
              source = "./child"
              size   = var.env_size
            }
            """,
        )
        write(workspace, "stack/child/variables.tf", 'variable "size" {\n  default = "small"\n}\n')
        child = workspace / "stack" / "child"

        assert await resolver.resolve_with_module_inputs("var.size", child) == '"large"'
        # Directory-order search alone only sees the declared default
        assert await resolver.resolve("var.size", child) == '"small"'

    @pytest.mark.asyncio
    async def test_threading_without_declaration_in_child(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(
            workspace,
            "stack/main.tf",
            """
            variable "env_size" {
              default = "large"
            }

            module "child" {
              source = "./child"
              size   = var.env_size
            }
            """,
        )
        write(workspace, "stack/child/variables.tf", 'variable "size" {}\n')
        child = workspace / "stack" / "child"

        assert await resolver.resolve_with_module_inputs("size", child) == '"large"'
        assert await resolver.resolve("size", child) is None

    @pytest.mark.asyncio
    async def test_resolve_module_path(
        self, resolver: TerraformReferenceResolver, module_tree: Path
    ) -> None:
        network = module_tree / "modules" / "network"

        assert await resolver.resolve_module_path('"./modules/network"', module_tree) == network
        assert await resolver.resolve_module_path("/modules/network", network) == network
        assert await resolver.resolve_module_path("../network", network) == network
        assert await resolver.resolve_module_path("git@github.com:org/mod.git", module_tree) is None
        assert await resolver.resolve_module_path("hashicorp/consul/aws", module_tree) is None
        assert await resolver.resolve_module_path("../../..", network) is None

    @pytest.mark.asyncio
    async def test_module_paths_cached_until_cleared(
        self, resolver: TerraformReferenceResolver, module_tree: Path
    ) -> None:
        network = module_tree / "modules" / "network"
        assert await resolver.resolve_module_path("./modules/network", module_tree) == network

        shutil.rmtree(network)
        assert await resolver.resolve_module_path("./modules/network", module_tree) == network

        await resolver.clear_cache()
        assert await resolver.resolve_module_path("./modules/network", module_tree) is None


class TestTermination:
    @pytest.mark.asyncio
    async def test_cycle_is_not_found(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "locals.tf", "locals {\n  a = local.b\n  b = local.a\n}\n")
        assert await resolver.resolve("local.a", workspace) is None
        assert await resolver.resolve("local.b", workspace) is None

    @pytest.mark.asyncio
    async def test_cycle_in_one_branch_keeps_the_rest(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "locals.tf", 'locals {\n  c = "${local.d}-x"\n  d = local.c\n}\n')
        assert await resolver.resolve("local.c", workspace) == '"${local.d}-x"'

    @pytest.mark.asyncio
    async def test_self_reference_through_property(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        write(workspace, "locals.tf", "locals {\n  a = local.a.x\n}\n")
        assert await resolver.resolve("local.a", workspace) is None

    @pytest.mark.asyncio
    async def test_chain_longer_than_depth_bound(
        self,
        resolver: TerraformReferenceResolver,
        workspace: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        lines = [f"  l{i} = local.l{i + 1}" for i in range(15)] + ['  l15 = "end"']
        write(workspace, "locals.tf", "locals {\n" + "\n".join(lines) + "\n}\n")

        with caplog.at_level(logging.WARNING):
            assert await resolver.resolve("local.l0", workspace) is None
        assert "Maximum depth" in caplog.text

        assert await resolver.resolve("local.l10", workspace) == '"end"'

    @pytest.mark.asyncio
    async def test_configured_depth_bound(self, workspace: Path) -> None:
        write(workspace, "locals.tf", 'locals {\n  a = local.b\n  b = local.c\n  c = "end"\n}\n')
        shallow = TerraformReferenceResolver(workspace, settings=ResolverSettings(max_depth=1))
        deep = TerraformReferenceResolver(workspace, settings=ResolverSettings(max_depth=2))

        assert await shallow.resolve("local.a", workspace) is None
        assert await deep.resolve("local.a", workspace) == '"end"'


class TestCaching:
    @pytest.mark.asyncio
    async def test_module_output_refreshed_after_module_file_changes(
        self, workspace: Path
    ) -> None:
        write(workspace, "main.tf", 'module "vpc" {\n  source = "./modules/vpc"\n}\n')
        outputs = write(
            workspace,
            "modules/vpc/outputs.tf",
            'output "cidr" {\n  value = "10.0.0.0/16"\n}\n',
        )
        accessor = CountingAccessor()
        resolver = TerraformReferenceResolver(workspace, accessor=accessor)

        assert await resolver.resolve("module.vpc.cidr", workspace) == '"10.0.0.0/16"'
        assert (
            await resolver.resolve_with_module_inputs("module.vpc.cidr", workspace)
            == '"10.0.0.0/16"'
        )
        assert accessor.reads["outputs.tf"] == 1

        outputs.write_text('output "cidr" {\n  value = "192.168.0.0/16"\n}\n')
        resolver.on_file_changed(outputs, "changed")

        assert await resolver.resolve("module.vpc.cidr", workspace) == '"192.168.0.0/16"'
        assert accessor.reads["outputs.tf"] == 2
        values = await resolver.resolve_in_multiple_contexts("module.vpc.cidr", [workspace])
        assert [v.value for v in values] == ['"192.168.0.0/16"']

    @pytest.mark.asyncio
    async def test_idempotent_and_cache_transparent(
        self, resolver: TerraformReferenceResolver, locals_tree: Path
    ) -> None:
        cold = await resolver.resolve("local.tags", locals_tree)
        warm = await resolver.resolve("local.tags", locals_tree)
        await resolver.clear_cache()
        recomputed = await resolver.resolve("local.tags", locals_tree)

        assert cold == warm == recomputed
        assert cold is not None

    @pytest.mark.asyncio
    async def test_invalidation_forces_fresh_read(self, workspace: Path) -> None:
        tfvars = write(workspace, "env/prod.tfvars", 'region = "us-east-1"\n')
        accessor = CountingAccessor()
        resolver = TerraformReferenceResolver(workspace, accessor=accessor)
        env = workspace / "env"

        await resolver.resolve("var.region", env)
        await resolver.resolve("var.region", env)
        assert accessor.reads["prod.tfvars"] == 1

        tfvars.write_text('region = "ap-south-1"\n')
        resolver.on_file_changed(tfvars, "changed")

        assert await resolver.resolve("var.region", env) == '"ap-south-1"'
        assert accessor.reads["prod.tfvars"] == 2

    @pytest.mark.asyncio
    async def test_not_found_is_cached(self, workspace: Path) -> None:
        write(workspace, "main.tf", "# empty\n")
        accessor = CountingAccessor()
        resolver = TerraformReferenceResolver(workspace, accessor=accessor)

        assert await resolver.resolve("var.absent", workspace) is None
        reads = sum(accessor.reads.values())
        assert await resolver.resolve("var.absent", workspace) is None
        assert sum(accessor.reads.values()) == reads

    @pytest.mark.asyncio
    async def test_cache_stats(
        self, resolver: TerraformReferenceResolver, locals_tree: Path
    ) -> None:
        await resolver.resolve("local.prefix", locals_tree)
        await resolver.resolve("local.prefix", locals_tree)
        stats = resolver.cache_stats()
        assert stats.size > 0
        assert stats.hits >= 1


class TestFailureSemantics:
    @pytest.mark.asyncio
    async def test_missing_start_directory(
        self,
        resolver: TerraformReferenceResolver,
        workspace: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.DEBUG):
            assert await resolver.resolve("var.x", workspace / "absent") is None
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    @pytest.mark.asyncio
    async def test_invalid_reference_text(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        assert await resolver.resolve("not a reference!", workspace) is None
        assert await resolver.resolve("module.only_name", workspace) is None

    @pytest.mark.asyncio
    async def test_directory_outside_workspace(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        assert await resolver.resolve("var.x", workspace.parent) is None

    @pytest.mark.asyncio
    async def test_unreadable_files_fall_through_to_parent(
        self, workspace: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        write(workspace, "locals.tf", 'locals {\n  env = "root"\n}\n')
        write(workspace, "app/locals.tf", 'locals {\n  env = "app"\n}\n')
        resolver = TerraformReferenceResolver(
            workspace, accessor=UnreadableDirectoryAccessor("app")
        )

        with caplog.at_level(logging.ERROR):
            assert await resolver.resolve("local.env", workspace / "app") == '"root"'
        assert "Permission denied" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_contained(
        self, workspace: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        resolver = TerraformReferenceResolver(workspace, accessor=ExplodingAccessor())
        with caplog.at_level(logging.ERROR):
            assert await resolver.resolve("var.x", workspace) is None
        assert "Unexpected failure" in caplog.text


class TestContexts:
    @pytest.fixture
    def environments(self, workspace: Path) -> Path:
        write(workspace, "variables.tf", 'variable "instance_type" {\n  default = "t3.micro"\n}\n')
        write(workspace, "environments/dev/terraform.tfvars", 'instance_type = "t3.small"\n')
        write(
            workspace,
            "environments/production/terraform.tfvars",
            'instance_type = "m5.large"\n',
        )
        return workspace

    def test_candidate_directories(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        candidates = resolver.candidate_directories(workspace / "app")
        assert candidates[0] == workspace / "app"
        assert candidates[1] == workspace
        assert workspace / "environments" / "dev" in candidates
        assert len(candidates) == 14
        assert len(resolver.candidate_directories(workspace)) == 13

    def test_context_label(
        self, resolver: TerraformReferenceResolver, workspace: Path
    ) -> None:
        assert resolver.context_label(workspace) == "root"
        assert resolver.context_label(workspace / "env" / "staging") == "staging"
        assert resolver.context_label(workspace / "dev") == "dev"
        assert resolver.context_label(workspace / "modules" / "vpc") == "modules/vpc"

    @pytest.mark.asyncio
    async def test_resolve_in_multiple_contexts(
        self, resolver: TerraformReferenceResolver, environments: Path
    ) -> None:
        values = await resolver.resolve_in_multiple_contexts(
            "var.instance_type", resolver.candidate_directories(environments)
        )
        assert [(v.context, v.value) for v in values] == [
            ("root", '"t3.micro"'),
            ("dev", '"t3.small"'),
            ("environments/production", '"m5.large"'),
        ]

    @pytest.mark.asyncio
    async def test_missing_candidates_are_skipped(
        self, resolver: TerraformReferenceResolver, environments: Path
    ) -> None:
        values = await resolver.resolve_in_multiple_contexts(
            "var.instance_type",
            [environments / "nowhere", environments / "environments" / "dev"],
        )
        assert [v.directory for v in values] == [environments / "environments" / "dev"]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_async_context_manager(self, workspace: Path) -> None:
        async with TerraformReferenceResolver(workspace) as resolver:
            assert resolver._cache.sweeper_running
        assert not resolver._cache.sweeper_running

    @pytest.mark.asyncio
    async def test_on_file_changed_drops_directory_entries(
        self, resolver: TerraformReferenceResolver, locals_tree: Path
    ) -> None:
        await resolver.resolve("local.prefix", locals_tree)
        assert resolver.cache_stats().size > 0

        resolver.on_file_changed(locals_tree / "locals.tf", "deleted")
        assert resolver.cache_stats().size == 0
