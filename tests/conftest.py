"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from deployctl.config import Config, RetryPolicy  # noqa: E402
from deployctl.models import DesiredState  # noqa: E402

TEST_SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
TEST_RESOURCE_GROUP = "rg-deployctl-test"


def demo_document(**overrides):
    """The two-subnet demo deployment as a camelCase document."""
    document = {
        "deploymentName": "demo",
        "imageReference": "repo:v1",
        "replicaCount": 1,
        "containerPort": 80,
        "networkSpec": {
            "cidr": "10.0.0.0/16",
            "subnets": [
                {"cidr": "10.0.1.0/24", "zone": "1"},
                {"cidr": "10.0.2.0/24", "zone": "2"},
            ],
        },
    }
    document.update(overrides)
    return document


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration with fast retries and a temporary state directory."""
    return Config(
        subscription_id=TEST_SUBSCRIPTION_ID,
        resource_group_name=TEST_RESOURCE_GROUP,
        location="westeurope",
        state_dir=tmp_path / "state",
        desired_state_dir=tmp_path / "specs",
        compute_cluster_id=(
            f"/subscriptions/{TEST_SUBSCRIPTION_ID}/resourceGroups/{TEST_RESOURCE_GROUP}"
            "/providers/Microsoft.App/managedEnvironments/shared-env"
        ),
        provider_call_timeout_seconds=5,
        retry=RetryPolicy(max_attempts=3, base_seconds=0.0, cap_seconds=0.0),
    )


@pytest.fixture
def demo_state() -> DesiredState:
    return DesiredState.model_validate(demo_document())
