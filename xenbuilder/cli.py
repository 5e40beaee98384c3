"""CLI entry points for xenbuilder."""

from __future__ import annotations

import argparse
import dataclasses
import signal
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from xenbuilder.builder import Builder
from xenbuilder.config import load_template
from xenbuilder.constants import _SENSITIVE_FIELDS
from xenbuilder.exceptions import BuildError, CancellationError, ValidationError
from xenbuilder.models import BuilderConfig
from xenbuilder.provision import load_provisioners
from xenbuilder.utils import log


def parse_var_overrides(pairs: List[str]) -> Dict[str, str]:
    """Turn ``--var key=value`` arguments into a mapping."""
    result: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise BuildError(f"Invalid --var '{pair}': expected KEY=VALUE")
        result[key.strip()] = value
    return result


def show_config(cfg: BuilderConfig) -> None:
    """Print the resolved build configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS and value:
            print(f"  {field.name}: ********")
        elif isinstance(value, Mapping):
            print(f"  {field.name}:")
            for key in sorted(value):
                print(f"    {key}: {value[key]}")
        elif isinstance(value, tuple):
            print(f"  {field.name}: {', '.join(str(item) for item in value)}")
        else:
            print(f"  {field.name}: {value}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build XenServer VM images through XAPI")
    parser.add_argument("template", type=Path, help="YAML build template")
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set a user variable (repeatable); overrides the template's variables section",
    )
    parser.add_argument("--show-config", action="store_true", help="Show resolved build configuration and exit")
    parser.add_argument("--validate", action="store_true", help="Validate the template, then exit")
    args = parser.parse_args(argv)

    builder = Builder()
    try:
        template = load_template(args.template)
        user_variables = dict(template["variables"])
        user_variables.update(parse_var_overrides(args.var))
        provisioners = load_provisioners(template["provisioners"])
        cfg = builder.prepare(template["builder"], user_variables=user_variables)
    except ValidationError as exc:
        log("ERROR", f"Template {args.template} is invalid:")
        for message in exc.errors:
            log("ERROR", f"  * {message}")
        return 1
    except BuildError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0
    if args.validate:
        log("SUCCESS", f"Template {args.template} is valid")
        return 0

    def _cancel_build(signum, frame):
        log("WARN", f"Received {signal.Signals(signum).name}; cancelling build")
        builder.cancel()

    prev_sigint = signal.signal(signal.SIGINT, _cancel_build)
    prev_sigterm = signal.signal(signal.SIGTERM, _cancel_build)
    try:
        artifact = builder.run(provisioners=provisioners)
    except CancellationError as exc:
        log("WARN", str(exc))
        return 130
    except BuildError as exc:
        log("ERROR", f"Build failed: {exc}")
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug in xenbuilder.")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)

    log("SUCCESS", f"Build '{cfg.build_name}' finished: {artifact}")
    for path in artifact.files:
        log("INFO", f"  {path}")
    return 0
