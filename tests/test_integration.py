"""Integration test launching and terminating a real instance.

Uses the account's default VPC and free tier instance type. The instance is
also set to power off after 10 minutes in case teardown fails. Run with:

    pytest tests/ -m integration --aws-region us-east-2
"""

from uuid import uuid4

import pytest
from conftest import ScriptedTerminal

from launchvm.config import ConfigStore
from launchvm.providers import get_gateway
from launchvm.session import LaunchContext, run_launch
from launchvm.tags import tags_to_filters
from launchvm.types import FlatConfig


@pytest.mark.integration
def test_launch_and_terminate(aws_region, tmp_path):
    gateway = get_gateway(aws_region)
    test_tag = {"launchvm-test": uuid4().hex[:8]}
    ctx = LaunchContext(
        gateway=gateway,
        terminal=ScriptedTerminal(["yes"]),
        store=ConfigStore(tmp_path),
        flags=FlatConfig(auto_termination_timer_minutes=10, user_tags=test_tag),
        save_config=True,
    )

    instance_ids = run_launch(ctx)
    try:
        assert len(instance_ids) == 1
        tagged = gateway.get_instances(tags_to_filters(test_tag))
        assert [i["InstanceId"] for i in tagged] == instance_ids

        saved = ctx.store.load()
        assert saved.user_tags == test_tag
        assert saved.auto_termination_timer_minutes == 10
    finally:
        gateway.terminate_instances(instance_ids)
