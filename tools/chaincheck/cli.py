#!/usr/bin/env python3
"""
CHAINCHECK CLI

Command-line access to the proof verification engine.

Usage:
    chaincheck [--format json|yaml|table|text] [--config FILE] <command> [options]

Commands:
    verify      Corroborate a claimed delivery location/time
    chain       Walk a record's provenance chain
    block       Locate the block that committed a transaction
    tamper      Check an off-chain payload copy against its commitment
    describe    Show the cryptographic details of an anchored record
    config      Configuration management
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from typing import Any, Callable, List, Optional

import yaml

from tools.chaincheck import __version__
from tools.chaincheck.config import ConfigError, get_config_manager
from tools.chaincheck.engine import ProofVerificationEngine, create_engine
from tools.chaincheck.observability import configure_logging
from tools.chaincheck.resilience import Deadline
from tools.chaincheck.scoring import GeoPoint


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return _format_text(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    rows_source = data.get("links") if isinstance(data, dict) and isinstance(data.get("links"), list) else data
    if isinstance(rows_source, list) and rows_source and isinstance(rows_source[0], dict):
        headers = list(rows_source[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in rows_source]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = [" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers))]
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    return _format_text(data)


def _format_text(data: Any) -> str:
    if isinstance(data, dict):
        lines = []
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                value = json.dumps(value, default=str)
            lines.append(f"{key}: {value}")
        return "\n".join(lines)
    return str(data)


class ChainCheckCLI:
    """Main CLI application."""

    def __init__(self, engine_factory: Callable[[], ProofVerificationEngine] = create_engine):
        self._engine_factory = engine_factory

        self.parser = argparse.ArgumentParser(
            prog="chaincheck",
            description="CHAINCHECK proof verification engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"chaincheck {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=[f.value for f in OutputFormat],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file (default: chaincheck.yaml if present)",
        )
        self.parser.add_argument(
            "--timeout", "-t",
            type=float,
            help="Overall deadline for the operation in seconds",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_proof_commands()
        self._register_config_commands()

    def _register_proof_commands(self) -> None:
        # verify
        verify = self.subparsers.add_parser("verify", help="Corroborate a claimed location/time")
        verify.add_argument("proof", help="Proof identifier (record hash)")
        verify.add_argument("--lat", type=float, help="Claimed latitude")
        verify.add_argument("--lon", type=float, help="Claimed longitude")
        verify.add_argument("--timestamp", help="Claimed time (ISO-8601 or epoch)")

        # chain
        chain = self.subparsers.add_parser("chain", help="Walk the provenance chain")
        chain.add_argument("proof", help="Proof identifier to start from")
        chain.add_argument("--depth", "-d", type=int, help="Maximum back-link hops")
        chain.add_argument("--address", "-a", help="Signer address whose back-links to follow")

        # block
        block = self.subparsers.add_parser("block", help="Locate the committing block")
        block.add_argument("tx", help="Transaction hash")

        # tamper
        tamper = self.subparsers.add_parser("tamper", help="Detect tampering of the off-chain copy")
        tamper.add_argument("proof", help="Proof identifier")
        tamper.add_argument("--local", help="JSON file with the locally held payload")

        # describe
        describe = self.subparsers.add_parser("describe", help="Show anchored record details")
        describe.add_argument("proof", help="Proof identifier")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., ledger.max_scan_blocks)")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._load_config(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except ConfigError as e:
            if not parsed.quiet:
                print(f"Configuration error: {e}", file=sys.stderr)
            return 2

    def _load_config(self, args: argparse.Namespace) -> None:
        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        obs = mgr.config.observability
        configure_logging(obs.log_level.get(), obs.log_format.get())

    def _deadline(self, args: argparse.Namespace) -> Optional[Deadline]:
        if args.timeout is None:
            return None
        if args.timeout < 0:
            raise CLIError("--timeout must be non-negative")
        return Deadline(args.timeout)

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip())

        return handler(args)

    # Proof handlers
    def _handle_verify(self, args: argparse.Namespace) -> Any:
        location = None
        if args.lat is not None or args.lon is not None:
            if args.lat is None or args.lon is None:
                raise CLIError("--lat and --lon must be given together")
            try:
                location = GeoPoint(args.lat, args.lon)
            except ValueError as e:
                raise CLIError(f"Invalid claimed location: {e}")
        deadline = self._deadline(args)
        with self._engine_factory() as engine:
            result = engine.verify_location(
                args.proof,
                claimed_location=location,
                claimed_timestamp=args.timestamp,
                deadline=deadline,
            )
        return result.to_dict()

    def _handle_chain(self, args: argparse.Namespace) -> Any:
        if args.depth is not None and args.depth < 0:
            raise CLIError("--depth must be non-negative")
        deadline = self._deadline(args)
        with self._engine_factory() as engine:
            links = engine.walk_provenance_chain(
                args.proof,
                max_depth=args.depth,
                tracking_address=args.address,
                deadline=deadline,
            )
        return {"proof_id": args.proof, "length": len(links), "links": [link.to_dict() for link in links]}

    def _handle_block(self, args: argparse.Namespace) -> Any:
        deadline = self._deadline(args)
        with self._engine_factory() as engine:
            return engine.locate_commit_block(args.tx, deadline=deadline).to_dict()

    def _handle_tamper(self, args: argparse.Namespace) -> Any:
        local = None
        if args.local:
            try:
                with open(args.local, encoding="utf-8") as f:
                    local = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise CLIError(f"Cannot read local payload {args.local}: {e}")
            if not isinstance(local, dict):
                raise CLIError("Local payload must be a JSON object")
        deadline = self._deadline(args)
        with self._engine_factory() as engine:
            return engine.detect_tampering(args.proof, local, deadline=deadline).to_dict()

    def _handle_describe(self, args: argparse.Namespace) -> Any:
        with self._engine_factory() as engine:
            return engine.describe_record(args.proof)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path, mask_secrets=True)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("; ".join(errors), exit_code=2)
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main() -> int:
    """CLI entry point."""
    cli = ChainCheckCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
