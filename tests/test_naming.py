import itertools

import pytest

from devops_provisioner.utils.naming import (
    app_name,
    container_repository_name,
    log_name_candidates,
    pipeline_name,
    secret_name,
    validate_project_name,
)


class TestProjectNameValidation:
    @pytest.mark.parametrize("name", ["demo", "my-app", "_tmp", "app_2"])
    def test_valid_names(self, name):
        assert validate_project_name(name) is None

    @pytest.mark.parametrize(
        "name, message",
        [
            ("", "empty"),
            ("my app", "spaces"),
            ("-demo", "start or end"),
            ("a--b", "'--'"),
            ("1demo", "number"),
            ("demo!", "letters"),
        ],
    )
    def test_invalid_names(self, name, message):
        assert message in validate_project_name(name)


class TestDerivedNames:
    def test_app_and_secret_names(self):
        assert app_name("My_Service") == "my-service"
        assert secret_name("My_Service") == "my-service-generated-ocirsecret"

    def test_pipeline_name(self):
        assert pipeline_name("demo", "Build fat JAR") == "demo: Build fat JAR"

    def test_container_repository_name(self):
        assert container_repository_name("Shop", "api") == "shop"
        assert container_repository_name("Shop", "api", sub="oci", jvm=True) == "shop-oci-jvm"
        assert container_repository_name("Shop", "api", qualify=True, jvm=True) == "shop-api-jvm"


class TestLogNameCandidates:
    def test_skips_taken_names(self):
        names = list(itertools.islice(log_name_candidates("demo", ["demoLog", "demoLog2"]), 3))
        assert names == ["demoLog1", "demoLog3", "demoLog4"]
