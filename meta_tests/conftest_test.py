import pytest

from conftest import SkipConditions, sufficient_system_resources_for_resource_intensive_tests
from mock import Mock, patch


class HarnessConfigMock():
    def __init__(self):
        self.execute_upgrade_tests = False
        self.execute_upgrade_tests_only = False
        self.force_execution_of_resource_intensive_tests = False
        self.only_resource_intensive_tests = False
        self.skip_resource_intensive_tests = False

    def set(self, config):
        if config != "":
            setattr(self, config, True)


def _mock_responses(responses, default_response=None):
    return lambda arg: responses[arg] if arg in responses else default_response


class TestConfTest(object):
    regular_test = Mock(name="regular_test_mock")
    upgrade_test = Mock(name="upgrade_test_mock")
    resource_intensive_test = Mock(name="resource_intensive_test_mock")
    resource_intensive_upgrade_test = Mock(name="resource_intensive_upgrade_test_mock")

    def setup_method(self):
        self.regular_test.get_closest_marker.side_effect = _mock_responses({})
        self.upgrade_test.get_closest_marker.side_effect = _mock_responses(
            {"upgrade_test": True})
        self.resource_intensive_test.get_closest_marker.side_effect = _mock_responses(
            {"resource_intensive": True})
        self.resource_intensive_upgrade_test.get_closest_marker.side_effect = _mock_responses(
            {"upgrade_test": True, "resource_intensive": True})

    @pytest.mark.parametrize("item", [upgrade_test, resource_intensive_test, resource_intensive_upgrade_test])
    def test_skip_if_no_config(self, item):
        harness_config = HarnessConfigMock()
        assert SkipConditions(harness_config, False).is_skippable(item)

    @pytest.mark.parametrize("item", [regular_test, resource_intensive_test])
    def test_include_if_no_config(self, item):
        harness_config = HarnessConfigMock()
        assert not SkipConditions(harness_config, True).is_skippable(item)

    @pytest.mark.parametrize("item,config",
                             [(upgrade_test, "execute_upgrade_tests_only"),
                              (resource_intensive_test, "only_resource_intensive_tests")])
    def test_include_if_config_only(self, item, config):
        harness_config = HarnessConfigMock()
        harness_config.set(config)
        assert not SkipConditions(harness_config, True).is_skippable(item)

    @pytest.mark.parametrize("item", [regular_test, upgrade_test, resource_intensive_test])
    @pytest.mark.parametrize("only_item,config",
                             [(upgrade_test, "execute_upgrade_tests_only"),
                              (resource_intensive_test, "only_resource_intensive_tests")])
    def test_config_only(self, item, only_item, config):
        harness_config = HarnessConfigMock()
        harness_config.set(config)
        skip_conditions = SkipConditions(harness_config, True)
        if item != only_item:
            assert skip_conditions.is_skippable(item)
        else:
            assert not skip_conditions.is_skippable(item)

    @pytest.mark.parametrize("item", [regular_test, upgrade_test, resource_intensive_test,
                                      resource_intensive_upgrade_test])
    def test_include_if_execute_upgrade(self, item):
        harness_config = HarnessConfigMock()
        harness_config.set("execute_upgrade_tests")
        assert not SkipConditions(harness_config, True).is_skippable(item)

    def test_upgrade_needs_resources_too(self):
        harness_config = HarnessConfigMock()
        harness_config.set("execute_upgrade_tests")
        assert SkipConditions(harness_config, False).is_skippable(self.resource_intensive_upgrade_test)
        assert not SkipConditions(harness_config, False).is_skippable(self.upgrade_test)

    @pytest.mark.parametrize("config, sufficient_resources",
                             [("", False),
                              ("skip_resource_intensive_tests", True),
                              ("skip_resource_intensive_tests", False)])
    def test_skip_resource_intensive(self, config, sufficient_resources):
        harness_config = HarnessConfigMock()
        harness_config.set(config)
        assert SkipConditions(harness_config, sufficient_resources).is_skippable(self.resource_intensive_test)

    @pytest.mark.parametrize("sufficient_resources", [True, False])
    def test_include_resource_intensive_if_any_resources(self, sufficient_resources):
        harness_config = HarnessConfigMock()
        harness_config.set("force_execution_of_resource_intensive_tests")
        assert not SkipConditions(harness_config, sufficient_resources).is_skippable(self.resource_intensive_test)

    def test_skip_resource_intensive_wins(self):
        harness_config = HarnessConfigMock()
        harness_config.set("force_execution_of_resource_intensive_tests")
        harness_config.set("only_resource_intensive_tests")
        harness_config.set("skip_resource_intensive_tests")
        assert SkipConditions(harness_config, True).is_skippable(self.resource_intensive_test)


@pytest.mark.parametrize("total_gb,cluster_size,sufficient", [(16, 3, True),
                                                              (6, 3, True),
                                                              (5, 3, False),
                                                              (8, 5, False)])
def test_memory_per_broker(total_gb, cluster_size, sufficient):
    with patch('conftest.virtual_memory') as virtual_memory:
        virtual_memory.return_value = Mock(total=total_gb * 1024 * 1024 * 1024)
        assert sufficient_system_resources_for_resource_intensive_tests(cluster_size) == sufficient
