#!/usr/bin/env python3
"""
Ledgerfold CLI

Command-line access to configuration, persisted epochs and verification.

Usage:
    ledgerfold <command> [subcommand] [options]

Commands:
    config      Configuration management
    keys        Signing key management
    tree        Commitment tree inspection
    history     Provenance history of one item
    verify      Provenance chain and aggregate proof verification
    serve       Run the retrieval and verification API

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ledgerfold import __version__
from ledgerfold.config import ConfigError, get_config, get_config_manager
from ledgerfold.errors import LedgerfoldError


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
        import yaml
        return yaml.dump(data, default_flow_style=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _load_json_file(path: str) -> Any:
    p = Path(path)
    if not p.exists():
        raise CLIError(f"File not found: {path}", exit_code=2)
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise CLIError(f"Invalid JSON in {path}: {e}", exit_code=2) from e


class LedgerfoldCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="ledgerfold",
            description="Batch commitment and recursive proof aggregation engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"ledgerfold {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file",
        )
        self.parser.add_argument(
            "--data-dir", "-d",
            help="Epoch data directory (overrides storage.path)",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_config_commands()
        self._register_keys_commands()
        self._register_tree_commands()
        self._register_history_command()
        self._register_verify_commands()
        self._register_serve_command()

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., aggregation.recursion_interval)")

        set_cmd = config_sub.add_parser("set", help="Set configuration value for this invocation")
        set_cmd.add_argument("path", help="Config path")
        set_cmd.add_argument("value", help="Value to set")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_keys_commands(self) -> None:
        keys = self.subparsers.add_parser("keys", help="Signing key management")
        keys_sub = keys.add_subparsers(dest="subcommand")

        generate = keys_sub.add_parser("generate", help="Generate an Ed25519 signing key (private JWK)")
        generate.add_argument("--kid", default="ledgerfold-1", help="Key id")
        generate.add_argument("--out", "-o", help="Write the private JWK to this file")

    def _register_tree_commands(self) -> None:
        tree = self.subparsers.add_parser("tree", help="Commitment tree inspection")
        tree_sub = tree.add_subparsers(dest="subcommand")

        root = tree_sub.add_parser("root", help="Root of a leaves file")
        root.add_argument("--leaves", "-l", help="leaves.jsonl (default: <data-dir>/leaves.jsonl)")

        prove = tree_sub.add_parser("prove", help="Inclusion proof for a position")
        prove.add_argument("position", type=int, help="Leaf position")
        prove.add_argument("--leaves", "-l", help="leaves.jsonl (default: <data-dir>/leaves.jsonl)")

    def _register_history_command(self) -> None:
        history = self.subparsers.add_parser("history", help="Provenance history of an item")
        history.add_argument("item_id", help="Item id (sha256 hex)")

    def _register_verify_commands(self) -> None:
        verify = self.subparsers.add_parser("verify", help="Verification")
        verify_sub = verify.add_subparsers(dest="subcommand")

        chain = verify_sub.add_parser("chain", help="Verify an item's provenance chain")
        chain.add_argument("item_id", help="Item id (sha256 hex)")

        aggregate = verify_sub.add_parser("aggregate", help="Verify an aggregate proof")
        aggregate.add_argument("--proof", "-p", required=True, help="Aggregate proof JSON")
        aggregate.add_argument("--leaves", "-l", required=True, help="Public inputs JSON")
        aggregate.add_argument("--keys", "-k", required=True, help="Verification keys (JWKS)")

    def _register_serve_command(self) -> None:
        serve = self.subparsers.add_parser("serve", help="Run the HTTP API")
        serve.add_argument("--host", default="127.0.0.1", help="Bind address")
        serve.add_argument("--port", type=int, default=8080, help="Bind port")
        serve.add_argument("--key", help="Private JWK file; an ephemeral key is generated if omitted")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._configure(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (LedgerfoldError, ConfigError, ValueError, KeyError, OSError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _configure(self, args: argparse.Namespace) -> None:
        from ledgerfold.observability import configure_logging

        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        if args.data_dir:
            mgr.set("storage.path", args.data_dir)
        obs = mgr.config.observability
        configure_logging(obs.log_level.get(), obs.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    def _data_dir(self) -> Path:
        return Path(get_config().storage.path.get())

    def _file_store(self):
        from ledgerfold.storage import FileStore

        data_dir = self._data_dir()
        if not data_dir.is_dir():
            raise CLIError(f"Data directory not found: {data_dir}", exit_code=2)
        return FileStore(data_dir)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_set(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        mgr.set(args.path, args.value)
        return {"path": args.path, "value": mgr.get(args.path), "status": "updated"}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()

    # Key handlers
    def _handle_keys_generate(self, args: argparse.Namespace) -> Any:
        from ledgerfold.proofs import SigningKey

        key = SigningKey.generate(args.kid)
        jwk = key.to_jwk()
        if args.out:
            Path(args.out).write_text(json.dumps(jwk, indent=2) + "\n", encoding="utf-8")
            public = dict(jwk)
            del public["d"]
            return {"kid": key.key_id, "written": args.out, "public": public}
        return jwk

    # Tree handlers
    def _load_tree(self, leaves_path: Optional[str]):
        from ledgerfold.items import Leaf
        from ledgerfold.schema import require_valid
        from ledgerfold.storage import iter_jsonl
        from ledgerfold.tree import CommitmentTree

        path = Path(leaves_path) if leaves_path else self._data_dir() / "leaves.jsonl"
        if not path.exists():
            raise CLIError(f"Leaves file not found: {path}", exit_code=2)
        leaves = []
        for record in iter_jsonl(path):
            require_valid(record, "leaf")
            leaves.append(Leaf.from_dict(record))
        return CommitmentTree.from_leaves(leaves, max_depth=get_config().tree.max_depth.get())

    def _handle_tree_root(self, args: argparse.Namespace) -> Any:
        tree = self._load_tree(args.leaves)
        return {"size": tree.size, "root": tree.root()}

    def _handle_tree_prove(self, args: argparse.Namespace) -> Any:
        tree = self._load_tree(args.leaves)
        try:
            return tree.proof_for(args.position).to_dict()
        except IndexError as e:
            raise CLIError(str(e), exit_code=2) from e

    # History handlers
    def _item_entries(self, item_id: str):
        from ledgerfold.provenance import ProvenanceEntry
        from ledgerfold.storage import iter_jsonl

        path = self._file_store().provenance_path(item_id)
        if not path.exists():
            raise CLIError(f"Unknown item: {item_id}", exit_code=2)
        return [ProvenanceEntry.from_dict(r) for r in iter_jsonl(path)]

    def _load_item(self, item_id: str):
        from ledgerfold.provenance import ProvenanceLog
        from ledgerfold.state import AssetStateMachine

        provenance = ProvenanceLog()
        provenance.load(self._item_entries(item_id))
        state = AssetStateMachine(provenance)
        state.replay([item_id])
        return provenance, state

    def _handle_history(self, args: argparse.Namespace) -> Any:
        provenance, state = self._load_item(args.item_id)
        record = state.record(args.item_id)
        return {
            "item_id": args.item_id,
            "state": record.state.value,
            "owner": record.owner,
            "position": record.position,
            "entries": [e.to_dict() for e in provenance.history_of(args.item_id)],
        }

    # Verify handlers
    def _handle_verify_chain(self, args: argparse.Namespace) -> Any:
        from ledgerfold.provenance import require_chain

        entries = self._item_entries(args.item_id)
        result: Dict[str, Any] = {"item_id": args.item_id, "entries": len(entries), "valid": True}
        try:
            require_chain(entries)
        except LedgerfoldError as e:
            result["valid"] = False
            result["error"] = str(e)
        return result

    def _handle_verify_aggregate(self, args: argparse.Namespace) -> Any:
        from ledgerfold.api import verify_document
        from ledgerfold.proofs import KeyRegistry

        proof = _load_json_file(args.proof)
        public_inputs = _load_json_file(args.leaves)
        registry = KeyRegistry.from_jwks(_load_json_file(args.keys))
        return verify_document(proof, public_inputs, registry).model_dump()

    # Serve handler
    def _handle_serve(self, args: argparse.Namespace) -> Any:
        import uvicorn

        from ledgerfold.anchor import InMemoryAnchorGateway
        from ledgerfold.api import create_app
        from ledgerfold.engine import Epoch
        from ledgerfold.proofs import SigningKey
        from ledgerfold.storage import open_store

        key = SigningKey.from_jwk(_load_json_file(args.key)) if args.key else SigningKey.generate("ledgerfold-ephemeral")
        storage = get_config().storage
        store = open_store(storage.backend.get(), storage.path.get())
        epoch = Epoch.restore(store, key, InMemoryAnchorGateway())
        try:
            uvicorn.run(create_app(epoch), host=args.host, port=args.port, log_level="warning")
        finally:
            epoch.close()
        return None


def main() -> int:
    """CLI entry point."""
    cli = LedgerfoldCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
