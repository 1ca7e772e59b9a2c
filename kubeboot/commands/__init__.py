"""CLI commands and the plumbing they share."""
import logging
from typing import Any, Callable, Dict, Optional

import typer
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from ..config import BootstrapContext, set_context
from ..errors import BootstrapError
from ..logging import setup_logging
from ..models import ComponentResult

# Global options, set by the top-level callback in kubeboot.cli
options: Dict[str, Any] = {"debug": False, "config": None}


def load_context(**overrides: Any) -> BootstrapContext:
    """Build the context from config file, environment and CLI overrides."""
    try:
        ctx = BootstrapContext.load(options.get("config"), overrides=overrides)
    except (ValidationError, FileNotFoundError) as e:
        typer.echo(f"❌ Invalid configuration: {e}", err=True)
        raise typer.Exit(code=1)
    set_context(ctx)
    return ctx


def run_component(component: str, ctx: BootstrapContext, action: Callable[[], Any]) -> Any:
    """Run one component with its log file set up and errors mapped to exit codes."""
    logger = setup_logging(component, ctx.logging, debug=options.get("debug", False))
    if ctx.dry_run:
        logger.info("[DRY RUN] No changes will be made")
    try:
        result = action()
    except BootstrapError as e:
        logger.error(f"❌ {e}")
        if options.get("debug"):
            logger.exception("Traceback:")
        raise typer.Exit(code=1)
    except ApiException as e:
        logger.error(f"❌ Kubernetes API error: {e.status} {e.reason} (re-run: kubeboot {component})")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        logger.error(f"❌ Interrupted (re-run: kubeboot {component})")
        raise typer.Exit(code=130)

    if isinstance(result, ComponentResult):
        report_result(result, logger)
    return result


def report_result(result: ComponentResult, logger: Optional[logging.Logger] = None) -> None:
    logger = logger or logging.getLogger(f"kubeboot.{result.component}")
    for warning in result.warnings:
        logger.warning(f"⚠️  {warning}")
    status = "changed" if result.changed else "no changes"
    typer.echo(f"✅ {result.message} ({status})")
