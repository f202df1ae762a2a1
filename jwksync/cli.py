"""
jwksync Command Line Interface.

Provides commands for provisioning and rotating keys, maintaining the
published JWKS, signing test tokens and validating tokens.
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator

from jwksync import config
from jwksync.errors import JWKSyncError, ValidationError
from jwksync.keys import KeyFamily
from jwksync.maintenance import PublicKeyMaintainer
from jwksync.rotation import KeyRotationManager
from jwksync.signer import TokenSigner
from jwksync.store import HTTPKeyStore, MemoryKeyStore, PartitionedKeyStore, RedisKeyStore
from jwksync.validator import TokenValidator

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='[%(asctime)s] %(levelname)s %(name)s: %(message)s'
    )


@asynccontextmanager
async def open_store(args: argparse.Namespace) -> AsyncIterator[PartitionedKeyStore]:
    """Open the configured backend bound to the configured partitions."""
    backend_name = args.store
    if backend_name == "redis":
        import redis.asyncio as redis

        client = redis.from_url(args.redis_url)
        fernet_key = config.FERNET_KEY.encode("ascii") if config.FERNET_KEY else None
        try:
            yield PartitionedKeyStore(
                RedisKeyStore(client, fernet_key=fernet_key), args.secretsmap, args.nonsecretsmap
            )
        finally:
            await client.aclose()
    elif backend_name == "http":
        async with HTTPKeyStore(
            args.kvm_url, args.env, token=config.KVM_TOKEN, http_timeout=config.HTTP_TIMEOUT
        ) as backend:
            yield PartitionedKeyStore(backend, args.secretsmap, args.nonsecretsmap)
    else:
        yield PartitionedKeyStore(MemoryKeyStore(), args.secretsmap, args.nonsecretsmap)


def _manager(args: argparse.Namespace, store: PartitionedKeyStore) -> KeyRotationManager:
    return KeyRotationManager(
        store,
        rsa_bits=args.keystrength,
        ec_curve=args.curve,
        kid_length=config.KID_LENGTH,
        check_kid_collisions=args.check_collisions,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


async def _provision(args: argparse.Namespace) -> int:
    async with open_store(args) as store:
        results = await _manager(args, store).provision(args.families)

    failed = 0
    for family, result in results.items():
        if result.ok:
            print(f"{family.value}: {result.keypair.kid}")
        else:
            failed += 1
            print(f"Error: {result.error}", file=sys.stderr)
    if not failed:
        logger.info("ok. the new keys were loaded successfully.")
    return 1 if failed else 0


async def _rotate(args: argparse.Namespace) -> int:
    async with open_store(args) as store:
        await store.ensure()
        keypair = await _manager(args, store).rotate(args.family)
    print(keypair.kid)
    return 0


async def _keys(args: argparse.Namespace) -> int:
    async with open_store(args) as store:
        maintainer = PublicKeyMaintainer(store)
        if args.remove:
            removed = await maintainer.remove(args.remove)
            logger.info(f"removed: {removed}")
        if args.update:
            await maintainer.update()
        keys = await maintainer.list_keys()
    logger.info(f"{len(keys)} available keys")
    _print_json(keys)
    return 0


async def _reconcile(args: argparse.Namespace) -> int:
    async with open_store(args) as store:
        report = await PublicKeyMaintainer(store).reconcile(repair=args.repair)

    _print_json({
        "consistent": report.consistent,
        "repaired": report.repaired,
        "stored": report.stored_kids,
        "published": report.published_kids,
        "unpublished": report.unpublished,
        "orphaned": report.orphaned,
        "missing_private": report.missing_private,
        "dangling_pointers": report.dangling_pointers,
        "incomplete_rotations": [c.to_dict() for c in report.incomplete_rotations],
        "jwks_corrupt": report.jwks_corrupt,
    })
    return 0 if report.consistent or report.repaired else 1


async def _current(args: argparse.Namespace) -> int:
    async with open_store(args) as store:
        current = await _manager(args, store).current_kid(args.family)
    if current is None:
        print(f"No {args.family.value} key provisioned", file=sys.stderr)
        return 1
    _print_json(current.to_dict())
    return 0


async def _sign(args: argparse.Namespace) -> int:
    if args.json:
        try:
            payload = json.loads(args.message)
        except json.JSONDecodeError as e:
            print(f"Error: Invalid JSON message: {e}", file=sys.stderr)
            return 1
    else:
        payload = args.message

    async with open_store(args) as store:
        signer = await TokenSigner.from_store(store, args.kid)
    print(signer.sign(payload))
    return 0


async def _validate(args: argparse.Namespace) -> int:
    async with TokenValidator(http_timeout=config.HTTP_TIMEOUT) as validator:
        result = await validator.check(args.token, args.endpoint)

    if args.json:
        _print_json({"valid": result.is_valid, "payload": result.payload, "error": result.reason})
    elif result.is_valid:
        print("Signature VERIFIED")
        print(f"payload: {json.dumps(result.payload)}")
    else:
        print(f"INVALID: {result.reason}")
    return 0 if result.is_valid else 1


async def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from jwksync.server import create_app

    async with open_store(args) as store:
        server = uvicorn.Server(uvicorn.Config(create_app(store), host=args.host, port=args.port))
        await server.serve()
    return 0


COMMANDS = {
    "provision": _provision,
    "rotate": _rotate,
    "keys": _keys,
    "reconcile": _reconcile,
    "current": _current,
    "sign": _sign,
    "validate": _validate,
    "serve": _serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='jwksync',
        description='jwksync - signing key rotation and JWKS publishing'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')
    parser.add_argument('--store', choices=['memory', 'redis', 'http'], default=config.STORE_BACKEND,
                        help='Key store backend. Default: %(default)s')
    parser.add_argument('-S', '--secretsmap', default=config.SECRETS_PARTITION,
                        help='Encrypted partition for private keys. Default: %(default)s')
    parser.add_argument('-N', '--nonsecretsmap', default=config.NONSECRETS_PARTITION,
                        help='Partition for public keys, kids and the JWKS. Default: %(default)s')
    parser.add_argument('-e', '--env', default=config.KVM_ENV,
                        help='Environment holding the key-value maps (http store)')
    parser.add_argument('--kvm-url', default=config.KVM_BASE_URL,
                        help='Key-value map management API base URL (http store)')
    parser.add_argument('--redis-url', default=config.REDIS_URL, help='Redis URL (redis store)')
    parser.add_argument('-b', '--keystrength', type=int, default=config.RSA_BITS,
                        help='RSA modulus length in bits. Default: %(default)s')
    parser.add_argument('--curve', default=config.EC_CURVE,
                        help='EC named curve. Default: %(default)s')
    parser.add_argument('--check-collisions', action='store_true',
                        help='Check the store for an existing kid before using a new one')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    p_provision = subparsers.add_parser('provision', help='Create partitions and a key per family')
    p_provision.add_argument('--families', nargs='+', type=KeyFamily.parse,
                             default=[KeyFamily.RSA, KeyFamily.EC], help='Families to provision')

    p_rotate = subparsers.add_parser('rotate', help='Add a new key for one family')
    p_rotate.add_argument('family', type=KeyFamily.parse, help='rsa or ec')

    p_keys = subparsers.add_parser('keys', help='List, remove or republish public keys')
    p_keys.add_argument('-R', '--remove', nargs='+', metavar='KID', help='Kids of keys to remove')
    p_keys.add_argument('-U', '--update', action='store_true',
                        help='Update the JWKS with the available public keys')

    p_reconcile = subparsers.add_parser('reconcile', help='Compare stored keys with the JWKS')
    p_reconcile.add_argument('--repair', action='store_true', help='Write repairs back')

    p_current = subparsers.add_parser('current', help='Show the current kid of a family')
    p_current.add_argument('family', type=KeyFamily.parse, help='rsa or ec')

    p_sign = subparsers.add_parser('sign', help='Sign a message with a stored private key')
    p_sign.add_argument('message', help='The message to sign')
    p_sign.add_argument('--kid', required=True, help='Kid of the signing key')
    p_sign.add_argument('--json', action='store_true', help='Parse message as JSON')

    p_validate = subparsers.add_parser('validate', help='Validate a token against a JWKS endpoint')
    p_validate.add_argument('-t', '--token', required=True, help='The JWT to validate')
    p_validate.add_argument('--endpoint', required=True, help='The JWKS endpoint holding the keys')
    p_validate.add_argument('--json', action='store_true', help='Output as JSON')

    p_serve = subparsers.add_parser('serve', help='Serve the published JWKS over HTTP')
    p_serve.add_argument('--host', default=config.SERVER_HOST)
    p_serve.add_argument('--port', type=int, default=config.SERVER_PORT)

    subparsers.add_parser('config', help='Print the effective configuration')

    return parser


def main(argv=None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'config':
        config.print_config()
        return 0

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 0

    try:
        return asyncio.run(command(args))
    except ValidationError as e:
        print(f"INVALID: {e}", file=sys.stderr)
        return 1
    except JWKSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
