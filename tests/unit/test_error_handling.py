"""Tests for error handling across components."""

import pytest

from talos_provisioner.artifacts import ArtifactStore
from talos_provisioner.exceptions import (
    ArtifactError,
    BatchError,
    ConfigurationError,
    ErrorCategory,
    HetznerAPIError,
    KubernetesError,
    ProvisionerError,
    StepFailedError,
    TalosError,
    ValidationError,
)
from talos_provisioner.logging_config import get_logger, setup_logging
from talos_provisioner.talos.client import classify_stderr


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = TalosError("Bootstrap failed", "Check that the node is running")

    assert error.message == "Bootstrap failed"
    assert error.details == "Check that the node is running"
    assert "Bootstrap failed" in str(error)
    assert "Check that the node is running" in str(error)


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = ValidationError("Invalid input")

    assert error.message == "Invalid input"
    assert error.details is None
    assert str(error) == "Invalid input"
    assert error.category == ErrorCategory.OTHER


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from ProvisionerError."""
    assert issubclass(TalosError, ProvisionerError)
    assert issubclass(KubernetesError, ProvisionerError)
    assert issubclass(ValidationError, ProvisionerError)
    assert issubclass(ConfigurationError, ProvisionerError)
    assert issubclass(HetznerAPIError, ProvisionerError)
    assert issubclass(ArtifactError, ProvisionerError)


def test_error_category_helpers():
    """Test that category helpers reflect the error category."""
    missing = HetznerAPIError("gone", category=ErrorCategory.NOT_FOUND)
    flaky = TalosError("timeout", category=ErrorCategory.TRANSIENT_NETWORK)

    assert missing.is_not_found
    assert not missing.is_transient
    assert flaky.is_transient
    assert not flaky.is_not_found


def test_step_failed_error_keeps_cause_and_category():
    """Test that a step failure names the step and keeps the cause's category."""
    cause = HetznerAPIError("Server limit reached", category=ErrorCategory.RESOURCE_BUSY)
    error = StepFailedError("Create servers", cause)

    assert error.step == "Create servers"
    assert error.cause is cause
    assert error.category == ErrorCategory.RESOURCE_BUSY
    assert "Create servers" in error.message
    assert "Server limit reached" in error.details


def test_step_failed_error_with_plain_exception():
    """Test that a non-provisioner cause gets the OTHER category."""
    error = StepFailedError("Detect public IP", RuntimeError("boom"))

    assert error.category == ErrorCategory.OTHER
    assert "boom" in error.details


def test_batch_error_lists_every_failure():
    """Test that a batch error reports each failed task by name."""
    error = BatchError(
        "Server creation",
        [("node-1", RuntimeError("quota")), ("node-2", RuntimeError("timeout"))],
    )

    assert len(error.errors) == 2
    assert "2 task(s) failed" in error.message
    assert "node-1: quota" in error.details
    assert "node-2: timeout" in error.details


@pytest.mark.parametrize(
    "stderr,expected",
    [
        ("rpc error: connection refused", ErrorCategory.TRANSIENT_NETWORK),
        ("dial tcp: i/o timeout", ErrorCategory.TRANSIENT_NETWORK),
        ("context deadline exceeded", ErrorCategory.TRANSIENT_NETWORK),
        ("resource NotFound", ErrorCategory.NOT_FOUND),
        ("permission denied", ErrorCategory.OTHER),
    ],
)
def test_talosctl_stderr_classification(stderr, expected):
    """Test that talosctl output is mapped onto error categories."""
    assert classify_stderr(stderr) == expected


def test_logging_setup():
    """Test that logging can be configured."""
    setup_logging(level="INFO", verbose=False)

    logger = get_logger("test")
    assert logger is not None
    assert logger.name == "test"


def test_logging_with_log_file(tmp_path):
    """Test that a log file receives debug output."""
    log_file = tmp_path / "logs" / "debug.log"
    setup_logging(verbose=True, log_file=log_file)

    get_logger("test").debug("This is a debug message")

    assert log_file.exists()
    assert "This is a debug message" in log_file.read_text()
    setup_logging()


def test_missing_artifact_error_message(tmp_path):
    """Test that a missing artifact error names the file and a hint."""
    store = ArtifactStore(tmp_path)

    with pytest.raises(ArtifactError) as exc_info:
        store.require("kubeconfig")

    error_msg = str(exc_info.value)
    assert "kubeconfig not found" in error_msg
    assert "talos-prov create" in error_msg


def test_exception_can_be_caught_as_base_class():
    """Test that specific exceptions can be caught as ProvisionerError."""
    try:
        raise TalosError("Test error")
    except ProvisionerError as e:
        assert isinstance(e, TalosError)
        assert e.message == "Test error"
