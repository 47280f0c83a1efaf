#!/usr/bin/env python3
"""Validate mesh call configuration files.

This tool validates both relay.yaml and peer.yaml configuration files
using Pydantic models, catching all configuration errors before runtime.

Exit codes:
    0: All configurations valid
    1: Configuration validation failed
    2: Import error

Usage:
    ./scripts/validate-config.py
    ./scripts/validate-config.py --relay configs/relay.yaml
    ./scripts/validate-config.py --peer configs/peer.yaml
    ./scripts/validate-config.py --help
"""

import argparse
import sys
from collections.abc import Callable
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pydantic import BaseModel, ValidationError

try:
    from orchestrator.config import PeerConfig
    from relay.config import RelayConfig
except ImportError as e:
    print(f"❌ Import Error: {e}")
    print("   Resolution: Ensure you're running from the project root and dependencies are installed.")
    print("   Run: pip install -e .")
    sys.exit(2)


def format_validation_errors(e: ValidationError) -> str:
    """Format Pydantic validation errors in a user-friendly way.

    Args:
        e: Pydantic ValidationError

    Returns:
        Formatted error message with resolution steps
    """
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        msg = error["msg"]
        errors.append(f"      Field: {loc}")
        errors.append(f"      Error: {msg}")
        errors.append(f"      Type: {error['type']}")

        if "greater than" in msg.lower() or "less than" in msg.lower():
            errors.append("      Resolution: Check valid range in configuration comments")
        elif "field required" in msg.lower():
            errors.append(f"      Resolution: Add required field '{loc}' to configuration")
        errors.append("")

    return "\n".join(errors)


def describe_relay(config: RelayConfig) -> list[str]:
    health = f"{config.health.host}:{config.health.port}" if config.health.enabled else "disabled"
    return [
        f"WebSocket: {config.host}:{config.port}",
        f"Health: {health}",
        f"Outbound queue: {config.outbound_queue_size} envelopes",
        f"Log Level: {config.log_level}",
    ]


def describe_peer(config: PeerConfig) -> list[str]:
    return [
        f"Relay: {config.signaling_url}",
        f"Room: {config.room or 'given at start'}",
        f"Peer id: {config.peer_id or 'random'}",
        f"ICE servers: {', '.join(url for server in config.ice_servers for url in server.urls)}",
        f"Glare policy: {config.glare_policy}",
        f"Video: {config.media.video_size}@{config.media.framerate}",
        f"Log Level: {config.log_level}",
    ]


def validate_config(
    path: Path,
    name: str,
    loader: Callable[[Path], BaseModel],
    describe: Callable[[BaseModel], list[str]],
    verbose: bool = False,
) -> bool:
    """Validate one configuration file.

    Args:
        path: Path to the YAML file
        name: Human readable configuration name
        loader: ``from_yaml`` of the configuration model
        describe: Summary lines printed in verbose mode
        verbose: Show configuration summary on success

    Returns:
        True if valid, False otherwise
    """
    try:
        config = loader(path)
        print(f"✅ {path}: Valid {name} configuration")

        if verbose:
            print("\n   Configuration loaded successfully:")
            for line in describe(config):
                print(f"   - {line}")

        return True

    except FileNotFoundError:
        print(f"❌ {path}: File not found")
        print(f"   Resolution: Create {name} configuration file at {path}")
        return False

    except ValidationError as e:
        print(f"❌ {path}: Invalid {name} configuration")
        print("\n   Validation Errors:")
        print(format_validation_errors(e))
        print("   Resolution: Fix configuration errors listed above")
        return False

    except Exception as e:
        print(f"❌ {path}: YAML parse error")
        print(f"   Error: {e}")
        print("   Resolution: Check YAML syntax (indentation, quotes, colons)")
        return False


def main() -> int:
    """Main entry point for config validation tool.

    Returns:
        Exit code (0=success, 1=validation failed)
    """
    parser = argparse.ArgumentParser(
        description="Validate mesh call configuration files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate both configs (default)
  ./scripts/validate-config.py

  # Validate specific config
  ./scripts/validate-config.py --relay configs/relay.yaml
  ./scripts/validate-config.py --peer configs/peer.yaml

  # Verbose output
  ./scripts/validate-config.py --verbose
        """,
    )
    parser.add_argument(
        "--relay",
        type=Path,
        default=Path("configs/relay.yaml"),
        help="Path to relay.yaml (default: configs/relay.yaml)",
    )
    parser.add_argument(
        "--peer",
        type=Path,
        default=Path("configs/peer.yaml"),
        help="Path to peer.yaml (default: configs/peer.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show configuration details on success",
    )
    args = parser.parse_args()

    print("=== Mesh Call Configuration Validation ===\n")

    relay_ok = validate_config(
        args.relay, "relay", RelayConfig.from_yaml, describe_relay, verbose=args.verbose  # type: ignore[arg-type]
    )
    print()
    peer_ok = validate_config(
        args.peer, "peer", PeerConfig.from_yaml, describe_peer, verbose=args.verbose  # type: ignore[arg-type]
    )
    print()

    print("=" * 40)
    if relay_ok and peer_ok:
        print("✅ All configurations valid")
        print("\nNext steps:")
        print("  1. Start the relay: mesh-relay")
        print("  2. Join from two terminals: mesh-peer --room demo")
        return 0

    print("❌ Configuration validation failed")
    print("\nFailed validations:")
    if not relay_ok:
        print(f"  - {args.relay}")
    if not peer_ok:
        print(f"  - {args.peer}")
    print("\nFix errors above and re-run validation.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
