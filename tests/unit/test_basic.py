"""Basic tests to verify project setup."""


def test_import_talos_provisioner():
    """Test that talos_provisioner package can be imported."""
    import talos_provisioner

    assert talos_provisioner.__version__ == "0.1.0"


def test_import_cli():
    """Test that CLI module can be imported."""
    from talos_provisioner import cli

    assert cli.app is not None


def test_import_models():
    """Test that models module exports the cluster specification."""
    from talos_provisioner import models

    assert models.ClusterSpec is not None


def test_import_orchestration():
    """Test that orchestration modules can be imported."""
    from talos_provisioner import orchestrator, scaling

    assert orchestrator.ClusterOrchestrator is not None
    assert scaling.ScalingProtocol is not None
