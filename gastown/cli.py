import click


@click.group()
def main() -> None:
    """Gastown - operator for fleets of AI coding agents."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from GASTOWN_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from GASTOWN_PORT or 8081).")
@click.option("--manifests", default=None, type=click.Path(exists=True, file_okay=False), help="Seed the store from a directory of JSON manifests.")
def run(host: str | None, port: int | None, manifests: str | None) -> None:
    """Start the operator: probes, metrics, object API and all controllers."""
    import os

    import uvicorn

    from gastown.operator.settings import GastownSettings

    if manifests:
        os.environ["GASTOWN_MANIFESTS_DIR"] = manifests
    settings = GastownSettings()

    uvicorn.run(
        "gastown.operator.app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
    )


@main.command("render-pod")
@click.argument("worker_file", type=click.File("r"))
def render_pod(worker_file) -> None:
    """Print the Pod manifest the operator would create for a Worker (Polecat) JSON file."""
    import json

    from pydantic import ValidationError

    from gastown.operator.errors import GastownError
    from gastown.operator.models import Worker
    from gastown.operator.pod.builder import PodBuilder
    from gastown.operator.settings import get_settings

    try:
        worker = Worker.model_validate_json(worker_file.read())
        pod = PodBuilder(worker, get_settings()).build()
    except (ValidationError, GastownError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(pod.to_wire(), indent=2))


@main.command("check-test-command")
@click.argument("command")
def check_test_command(command: str) -> None:
    """Check a merge-queue test command against the allow-list."""
    from gastown.operator.errors import GastownError
    from gastown.operator.gitops.merge import validate_test_command

    try:
        validate_test_command(command)
    except GastownError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("ok")


if __name__ == "__main__":
    main()
