#!/usr/bin/env python3
"""ragent - authenticating TLS relay for a local agent."""

import argparse
import datetime
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from rich.console import Console
from rich.table import Table

from config import (
    RAGENT_CAPABILITY,
    RAGENT_GRANTS_DB,
    RAGENT_HANDSHAKE_TIMEOUT,
    RAGENT_IDENTITY_FILE,
    RAGENT_LISTEN_HOST,
    RAGENT_LISTEN_PORT,
    RAGENT_LOG_FILE,
    RAGENT_UPSTREAM_HOST,
    RAGENT_UPSTREAM_PORT,
)
from relay import (
    EVERYONE_KEY,
    AdmissionDenied,
    CertificateError,
    ClientError,
    GrantDirectoryError,
    Identity,
    IdentityError,
    ProofMismatch,
    RelayClient,
    RelayConfig,
    RelayServer,
    SQLiteGrantDirectory,
    fmt_key,
    unfmt_key,
)
from utils.logger import setup_logger
from utils.validation import parse_host_port

console = Console()


def _address(default_host: str):
    """argparse type for host:port arguments."""
    def parse(text: str):
        try:
            return parse_host_port(text, default_host=default_host)
        except ValueError as e:
            raise argparse.ArgumentTypeError(str(e))
    return parse


def _receiver_key(text: str) -> bytes:
    if text.lower() == "everyone":
        return EVERYONE_KEY
    try:
        return unfmt_key(text)
    except IdentityError as e:
        raise argparse.ArgumentTypeError(str(e))


def _error(message: str) -> int:
    console.print(f"[bold red]Error:[/bold red] {message}", style="red")
    return 1


def cmd_serve(args) -> int:
    """Run the relay until interrupted."""
    setup_logger(
        level=logging.DEBUG if args.verbose else logging.INFO,
        log_file=args.log_file,
    )

    try:
        identity = Identity.from_file(args.entity)
    except IdentityError as e:
        return _error(str(e))

    listen_host, listen_port = args.listen
    upstream_host, upstream_port = args.upstream
    config = RelayConfig(
        identity=identity,
        listen_host=listen_host,
        listen_port=listen_port,
        upstream_host=upstream_host,
        upstream_port=upstream_port,
        capability=args.capability,
        handshake_timeout=args.handshake_timeout,
    )

    directory = SQLiteGrantDirectory(args.db)
    try:
        directory.initialize()
        server = RelayServer(config, directory)
    except (GrantDirectoryError, CertificateError) as e:
        return _error(str(e))

    console.print(f"[green]ragent[/green] identity [cyan]{identity.key_text}[/cyan]")
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    try:
        server.serve_forever()
    except OSError as e:
        return _error(f"Could not open listener on {listen_host}:{listen_port}: {e}")
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
    finally:
        directory.close()

    console.print("[green]ragent stopped.[/green]")
    return 0


def cmd_keygen(args) -> int:
    """Create a new identity file."""
    if os.path.exists(os.path.expanduser(args.output)) and not args.force:
        return _error(f"{args.output} already exists (use --force to overwrite)")

    identity = Identity.generate()
    try:
        identity.to_file(args.output)
    except OSError as e:
        return _error(f"Cannot write {args.output}: {e}")

    console.print(f"Wrote identity to [bold]{args.output}[/bold]")
    console.print(f"Verify key: [cyan]{identity.key_text}[/cyan]")
    return 0


def cmd_grant(args) -> int:
    """Grant a receiver key the relay capability."""
    try:
        issuer = Identity.from_file(args.entity)
    except IdentityError as e:
        return _error(str(e))

    ttl = args.days * 86400 if args.days else None
    directory = SQLiteGrantDirectory(args.db)
    try:
        grant_id = directory.add_grant(issuer.verify_key, args.receiver, args.capability, ttl=ttl)
    except GrantDirectoryError as e:
        return _error(str(e))
    finally:
        directory.close()

    receiver = "everyone" if args.receiver == EVERYONE_KEY else fmt_key(args.receiver)
    console.print(
        f"Grant [bold]{grant_id}[/bold]: {issuer.key_text} -> {receiver} "
        f"([cyan]{args.capability}[/cyan])"
    )
    return 0


def cmd_revoke(args) -> int:
    """Revoke a grant by id."""
    directory = SQLiteGrantDirectory(args.db)
    try:
        revoked = directory.revoke_grant(args.grant_id)
    except GrantDirectoryError as e:
        return _error(str(e))
    finally:
        directory.close()

    if not revoked:
        return _error(f"No active grant with id {args.grant_id}")
    console.print(f"Revoked grant [bold]{args.grant_id}[/bold]")
    return 0


def _format_time(ts) -> str:
    if ts is None:
        return "-"
    return datetime.datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def cmd_grants(args) -> int:
    """List grants, optionally only those issued by an identity."""
    directory = SQLiteGrantDirectory(args.db)
    try:
        if args.entity:
            issuer = Identity.from_file(args.entity)
            grants = directory.find_grants_from(issuer.verify_key)
        else:
            grants = directory.list_grants()
    except (IdentityError, GrantDirectoryError) as e:
        return _error(str(e))
    finally:
        directory.close()

    state_styles = {"valid": "green", "expired": "yellow", "revoked": "red"}

    table = Table(title="Relay Grants")
    table.add_column("ID", justify="right")
    table.add_column("Issuer", style="cyan")
    table.add_column("Receiver", style="cyan")
    table.add_column("Capability")
    table.add_column("State")
    table.add_column("Expires")

    for grant in grants:
        row = grant.to_dict()
        style = state_styles.get(row["state"], "dim")
        table.add_row(
            str(row["id"]),
            row["issuer"],
            row["receiver"],
            row["capability"],
            f"[{style}]{row['state']}[/{style}]",
            _format_time(row["expires_at"]),
        )

    console.print(table)
    return 0


def cmd_probe(args) -> int:
    """Run the client handshake against a relay and report the result."""
    try:
        identity = Identity.from_file(args.entity)
        trusted = unfmt_key(args.trust) if args.trust else None
    except IdentityError as e:
        return _error(str(e))

    host, port = args.address
    client = RelayClient(identity, trusted_vk=trusted, timeout=args.timeout)
    try:
        sock = client.connect(host, port)
    except ProofMismatch as e:
        return _error(f"Relay proof rejected: {e}")
    except AdmissionDenied as e:
        console.print(f"[yellow]Not admitted:[/yellow] {e}")
        return 2
    except (ClientError, OSError) as e:
        return _error(f"Probe failed: {e}")

    sock.close()
    console.print(
        f"[green]Admitted[/green] by relay [cyan]{fmt_key(client.server_vk)}[/cyan] "
        f"at {host}:{port}"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ragent",
        description="ragent - authenticating TLS relay for a local agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ragent keygen -o relay.json                      # Create the relay identity
  ragent keygen -o client.json                     # Create a client identity
  ragent grant -e relay.json <CLIENT_KEY>          # Permit a client
  ragent grant -e relay.json everyone --days 7     # Permit anyone for a week
  ragent serve -e relay.json -l :4514 -u 127.0.0.1:28589
  ragent probe -e client.json relay.example:4514 --trust <RELAY_KEY>
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the relay")
    serve.add_argument(
        "-e", "--entity",
        default=RAGENT_IDENTITY_FILE,
        help=f"Relay identity file (default: {RAGENT_IDENTITY_FILE})",
    )
    serve.add_argument(
        "-l", "--listen",
        type=_address(RAGENT_LISTEN_HOST),
        default=(RAGENT_LISTEN_HOST, RAGENT_LISTEN_PORT),
        metavar="HOST:PORT",
        help=f"Listen address (default: {RAGENT_LISTEN_HOST}:{RAGENT_LISTEN_PORT})",
    )
    serve.add_argument(
        "-u", "--upstream",
        type=_address(RAGENT_UPSTREAM_HOST),
        default=(RAGENT_UPSTREAM_HOST, RAGENT_UPSTREAM_PORT),
        metavar="HOST:PORT",
        help=f"Upstream agent address (default: {RAGENT_UPSTREAM_HOST}:{RAGENT_UPSTREAM_PORT})",
    )
    serve.add_argument("--db", default=RAGENT_GRANTS_DB, help="Grant database path")
    serve.add_argument(
        "--capability",
        default=RAGENT_CAPABILITY,
        help=f"Capability clients must be granted (default: {RAGENT_CAPABILITY})",
    )
    serve.add_argument(
        "--handshake-timeout",
        type=float,
        default=RAGENT_HANDSHAKE_TIMEOUT,
        metavar="SECONDS",
        help=f"Seconds to wait for a client's reply (default: {RAGENT_HANDSHAKE_TIMEOUT})",
    )
    serve.add_argument("--log-file", default=RAGENT_LOG_FILE, help="Also log to this file")
    serve.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    serve.set_defaults(func=cmd_serve)

    keygen = subparsers.add_parser("keygen", help="Create an identity file")
    keygen.add_argument("-o", "--output", required=True, help="Identity file to write")
    keygen.add_argument("--force", action="store_true", help="Overwrite an existing file")
    keygen.set_defaults(func=cmd_keygen)

    grant = subparsers.add_parser("grant", help="Grant a key access to the relay")
    grant.add_argument(
        "-e", "--entity",
        default=RAGENT_IDENTITY_FILE,
        help="Issuing (relay) identity file",
    )
    grant.add_argument("receiver", type=_receiver_key, help="Receiver verify key or 'everyone'")
    grant.add_argument("--capability", default=RAGENT_CAPABILITY, help="Capability to grant")
    grant.add_argument("--days", type=float, help="Expire the grant after this many days")
    grant.add_argument("--db", default=RAGENT_GRANTS_DB, help="Grant database path")
    grant.set_defaults(func=cmd_grant)

    revoke = subparsers.add_parser("revoke", help="Revoke a grant")
    revoke.add_argument("grant_id", type=int, help="Grant id (see 'ragent grants')")
    revoke.add_argument("--db", default=RAGENT_GRANTS_DB, help="Grant database path")
    revoke.set_defaults(func=cmd_revoke)

    grants = subparsers.add_parser("grants", help="List grants")
    grants.add_argument("-e", "--entity", help="Only grants issued by this identity")
    grants.add_argument("--db", default=RAGENT_GRANTS_DB, help="Grant database path")
    grants.set_defaults(func=cmd_grants)

    probe = subparsers.add_parser("probe", help="Test admission against a relay")
    probe.add_argument("-e", "--entity", required=True, help="Client identity file")
    probe.add_argument("address", type=_address(None), metavar="HOST:PORT", help="Relay address")
    probe.add_argument("--trust", help="Expected relay verify key")
    probe.add_argument("--timeout", type=float, default=10.0, help="Socket timeout in seconds")
    probe.set_defaults(func=cmd_probe)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
