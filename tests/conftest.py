from __future__ import annotations

import pytest

from jenkins_launcher.models import JobRef, ParameterDefinition

from fakes import JOB_URL


@pytest.fixture
def job():
    return JobRef(name="x", url=JOB_URL)


@pytest.fixture
def param_job():
    return JobRef(
        name="deploy",
        url="https://ci/job/deploy/",
        parameters=(
            ParameterDefinition("BRANCH", "Git branch", "main"),
            ParameterDefinition("ENV", "Target environment", "staging"),
        ),
    )
