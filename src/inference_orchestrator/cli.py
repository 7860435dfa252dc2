import sys

import click
import orjson

from . import __version__
from .experiments.models import load_definitions, validate_experiment, validate_flag
from .experiments.statistics import required_sample_size, two_proportion_z_test
from .finops.pricing import MODEL_PRICING, calculate_cost, is_known_model
from .routing.capabilities import CAPABILITIES, get_capability


def get_version():
    return __version__


def _emit(payload, format):
    if format == "json":
        click.echo(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())
    else:
        for key, value in payload.items():
            click.echo(f"{key}: {value}")


@click.group()
def cli():
    pass


@cli.command()
@click.option("--format", default="text", type=click.Choice(["text", "json"]))
def version(format):
    if format == "json":
        click.echo(orjson.dumps({"version": get_version()}).decode())
    else:
        click.echo(f"v{get_version()}")


@cli.command("validate-config")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def validate_config(path):
    """Validate experiment and flag definitions in a JSON file."""
    try:
        experiments, flags = load_definitions(path)
    except (orjson.JSONDecodeError, ValueError) as e:
        click.echo(f"Could not parse {path}: {e}", err=True)
        sys.exit(2)

    failures = 0
    for experiment in experiments:
        errors = validate_experiment(experiment)
        failures += bool(errors)
        status = "ok" if not errors else "invalid"
        click.echo(f"experiment {experiment.id}: {status}")
        for error in errors:
            click.echo(f"  - {error}")
    for flag in flags:
        errors = validate_flag(flag)
        failures += bool(errors)
        click.echo(f"flag {flag.id or '<missing>'}: {'ok' if not errors else 'invalid'}")
        for error in errors:
            click.echo(f"  - {error}")

    if failures:
        sys.exit(1)


@cli.command()
@click.option("--control-conversions", type=int, required=True)
@click.option("--control-size", type=int, required=True)
@click.option("--variant-conversions", type=int, required=True)
@click.option("--variant-size", type=int, required=True)
@click.option("--confidence", default=0.95, type=float)
@click.option("--format", default="text", type=click.Choice(["text", "json"]))
def significance(control_conversions, control_size, variant_conversions, variant_size, confidence, format):
    """Two-proportion z-test between a control and a variant."""
    result = two_proportion_z_test(
        control_conversions,
        control_size,
        variant_conversions,
        variant_size,
        confidence_level=confidence,
    )
    _emit(result.to_dict(), format)


@cli.command()
@click.argument("model")
@click.option("--input-tokens", type=int, required=True)
@click.option("--output-tokens", type=int, required=True)
@click.option("--format", default="text", type=click.Choice(["text", "json"]))
def cost(model, input_tokens, output_tokens, format):
    """Price a call in cents."""
    _emit(
        {
            "model": model,
            "known_model": is_known_model(model),
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_cents": round(calculate_cost(model, input_tokens, output_tokens), 6),
        },
        format,
    )


@cli.command()
def models():
    """List priced models (cents per 1k tokens)."""
    for name, pricing in sorted(MODEL_PRICING.items()):
        click.echo(f"{name}\t{pricing.provider}\tin={pricing.input_rate}\tout={pricing.output_rate}")


@cli.command()
@click.argument("name", required=False)
@click.option("--format", default="text", type=click.Choice(["text", "json"]))
def capability(name, format):
    """Show a capability's routing defaults, or list capabilities."""
    if name is None:
        for known in sorted(CAPABILITIES):
            click.echo(known)
        return
    try:
        config = get_capability(name)
    except KeyError as e:
        raise click.BadParameter(str(e.args[0]), param_hint="NAME")
    _emit(
        {
            "name": config.name,
            "provider": config.default_provider,
            "model": config.default_model,
            "fallback_provider": config.fallback_provider,
            "fallback_model": config.fallback_model,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "cache_ttl_seconds": config.cache_ttl_seconds,
        },
        format,
    )


@cli.command("sample-size")
@click.option("--baseline", type=float, required=True, help="Baseline conversion rate, 0-1")
@click.option("--mde", type=float, required=True, help="Minimum detectable relative lift")
@click.option("--confidence", default=0.95, type=float)
@click.option("--power", default=0.8, type=float)
def sample_size(baseline, mde, confidence, power):
    """Per-variant sample size needed to detect a lift."""
    try:
        n = required_sample_size(baseline, mde, confidence_level=confidence, power=power)
    except ValueError as e:
        raise click.BadParameter(str(e))
    click.echo(n)


if __name__ == "__main__":
    cli()
