"""
Command-line interface for the runner autoscaler using Typer
"""
import json
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .clock import ManualClock
from .config import (
    ConfigError, ConfigManager, AutoscalerConfig, load_config_with_env_override,
    create_default_config_file,
)
from .logger import get_logger, configure_logging, format_counts
from .models import EventType
from .orchestrator import Orchestrator
from .simulation import InMemoryWorkQueue, InMemorySubstrate

app = typer.Typer(
    name="runner-autoscaler",
    help="Autoscale CI runners across repositories",
    no_args_is_help=True,
)


def _load(config_file: Optional[Path]) -> AutoscalerConfig:
    return load_config_with_env_override(config_file)


@app.command()
def validate(
    config_file: Annotated[Path, typer.Argument(help="Path to the YAML configuration file")],
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show detailed information")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Enable debug logging")] = False,
):
    """Validate a configuration file"""
    logger = get_logger(debug=debug, verbose=verbose)

    try:
        config = _load(config_file)
    except ConfigError as e:
        logger.error(str(e))
        typer.echo(f"invalid: {e}")
        raise typer.Exit(1)

    errors = ConfigManager().validate_config(config)
    if errors:
        for error in errors:
            typer.echo(f"error: {error}")
        raise typer.Exit(1)

    logger.success(f"Configuration valid ({len(config.repositories)} repositories)")
    typer.echo(f"ok: {len(config.repositories)} repositories")


@app.command("show-policy")
def show_policy(
    config_file: Annotated[Path, typer.Argument(help="Path to the YAML configuration file")],
    repository: Annotated[Optional[str], typer.Option("--repository", "-r", help="Only show this repository")] = None,
):
    """Show the effective scaling policy of each repository"""
    logger = get_logger()

    try:
        config = _load(config_file)
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    names = [repository] if repository else list(config.repositories)
    for name in names:
        try:
            policy = config.policy_for(name)
        except ConfigError as e:
            typer.echo(f"{name}: INVALID ({e})")
            continue
        typer.echo(
            f"{name}: mode={policy.mode} dedicated={policy.dedicated_count} "
            f"max_dynamic={policy.max_dynamic} up={policy.scale_up_threshold:.2f} "
            f"down={policy.scale_down_threshold:.2f} cooldown={policy.cooldown:.0f}s "
            f"idle_timeout={policy.idle_timeout:.0f}s step={policy.max_scale_up_step}"
        )


@app.command("init-config")
def init_config(
    output: Annotated[Path, typer.Argument(help="Where to write the configuration file")],
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing file")] = False,
):
    """Write a default configuration file"""
    logger = get_logger()

    if output.exists() and not force:
        logger.error(f"{output} already exists (use --force to overwrite)")
        raise typer.Exit(1)

    try:
        create_default_config_file(output)
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    typer.echo(f"wrote {output}")


@app.command()
def simulate(
    config_file: Annotated[Optional[Path], typer.Argument(help="Configuration file (defaults if omitted)")] = None,
    ticks: Annotated[int, typer.Option(help="Number of ticks to run")] = 20,
    burst: Annotated[int, typer.Option(help="Jobs submitted on the second tick")] = 4,
    complete_after: Annotated[int, typer.Option("--complete-after", help="Tick at which all jobs finish")] = 5,
    repository: Annotated[Optional[str], typer.Option("--repository", "-r", help="Repository receiving the burst")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show detailed information")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Enable debug logging")] = False,
):
    """Run the control loop against in-memory backends with simulated time"""
    logger = get_logger(debug=debug, verbose=verbose)

    try:
        config = _load(config_file)
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    if not config.repositories:
        config = ConfigManager().merge_dict(config, {"repositories": {"example/repo": {}}})

    configure_logging("DEBUG" if debug else config.monitoring.log_level)

    target = repository or next(iter(config.repositories))
    if target not in config.repositories:
        logger.error(f"Unknown repository: {target}")
        raise typer.Exit(1)

    clock = ManualClock()
    work_queue = InMemoryWorkQueue()
    substrate = InMemorySubstrate(work_queue)
    orchestrator = Orchestrator(config, work_queue, substrate, clock=clock)

    orchestrator.subscribe(logger.event, {EventType.SCALING_UP, EventType.SCALING_DOWN,
                                          EventType.RUNNER_CREATED, EventType.RUNNER_REMOVED,
                                          EventType.RUNNER_FAILED, EventType.REPOSITORY_DEGRADED,
                                          EventType.REPOSITORY_RECOVERED})

    try:
        if orchestrator.warm_pool is not None:
            orchestrator.warm_pool.replenish()

        step = config.orchestrator.tick_interval
        for tick in range(1, ticks + 1):
            if tick == 2 and burst:
                work_queue.submit_jobs(target, burst)
                logger.info(f"Submitted {burst} jobs to {target}")
            if tick == complete_after:
                done = work_queue.complete_jobs(target)
                logger.info(f"Completed {done} jobs on {target}")

            previous = orchestrator.get_decision_history(target)[-1:]
            outcomes = orchestrator.tick()
            latest = orchestrator.get_decision_history(target)[-1:]
            if latest and latest != previous:
                logger.decision(latest[0])
            counts = orchestrator.lifecycle.counts(target)
            typer.echo(
                f"tick {tick:3d} t+{(tick - 1) * step:6.0f}s {target}: "
                f"{format_counts(counts)} [{outcomes.get(target)}]"
            )
            if orchestrator.warm_pool is not None:
                orchestrator.warm_pool.replenish()
            clock.advance(step)

        snapshot = orchestrator.status_snapshot()
        typer.echo(json.dumps(snapshot["totals"], sort_keys=True))
        counts = orchestrator.events.get_counts()
        for event_type in (EventType.SCALING_UP, EventType.SCALING_DOWN,
                           EventType.RUNNER_CREATED, EventType.RUNNER_REMOVED):
            typer.echo(f"{event_type.value}: {counts.get(event_type.value, 0)}")
    finally:
        orchestrator.stop()

    logger.success("Simulation finished")


def main():
    """Main entry point for the CLI"""
    app()


if __name__ == "__main__":
    main()
