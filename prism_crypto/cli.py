# cli.py - Command line entry point: identity key generation and an Alice/Bob demo
import argparse
import getpass
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

from .chat_service import ChatService
from .config import Settings, configure_logging
from .security.key_directory import InMemoryKeyDirectory
from .security.keys import PrivatePrekeyStore
from .security.tee import FileBackedTee, InMemoryTee
from .utils.error_handler import ErrorHandler, PrismCryptoError
from .utils.state_manager import SessionStore


def _password(args) -> str:
    return args.password or os.environ.get("PRISM_PASSWORD") or getpass.getpass("Key store password: ")


def cmd_keygen(args, settings: Settings) -> int:
    """Create (or load) the identity key and print a signed key bundle"""
    key_dir = Path(args.key_dir or settings.key_dir) / args.user
    tee = FileBackedTee(key_dir, _password(args), args.prekeys or settings.prekey_batch_size)

    user_keys = tee.create_user_keys()
    bundle = PrivatePrekeyStore.from_user_keys(user_keys).key_bundle(user_keys.identity_key)
    bundle.verify()

    print(json.dumps(bundle.to_dict(), indent=2))
    print(f"Identity key stored in {tee.key_path}", file=sys.stderr)
    return 0


def _run_demo(state_root: Path, settings: Settings) -> None:
    directory = InMemoryKeyDirectory()
    alice = ChatService("alice", InMemoryTee(settings.prekey_batch_size), directory,
                        SessionStore(state_root / "alice", "alice-demo-password"), settings=settings)
    bob = ChatService("bob", InMemoryTee(settings.prekey_batch_size), directory,
                      SessionStore(state_root / "bob", "bob-demo-password"), settings=settings)

    print("1. Registering key bundles")
    alice.register()
    bob.register()
    print(f"   bob has {directory.prekey_count('bob')} one-time prekeys published")

    print("2. Alice starts a chat with Bob (X3DH)")
    alice.start_chat("bob")
    print(f"   bob has {directory.prekey_count('bob')} one-time prekeys left")

    print("3. Alice sends three messages, delivered out of order")
    envelopes = [alice.send_message("bob", text) for text in ("Hi Bob!", "How are you?", "Long time no see")]
    for index in (0, 2, 1):
        envelope = envelopes[index]
        print(f"   bob <- #{envelope['sequence_number']}: {bob.receive_message(envelope)!r}")

    print("4. Bob replies (DH ratchet step)")
    reply = bob.send_message("alice", "Doing great, thanks!")
    print(f"   alice <- {alice.receive_message(reply)!r}")

    print("5. Replaying Bob's reply")
    try:
        alice.receive_message(reply)
        print("   replay was accepted (unexpected)")
    except PrismCryptoError as e:
        print(f"   rejected: {type(e).__name__} [{e.error_code.value}]")

    print("6. Sessions persisted under", state_root)


def cmd_demo(args, settings: Settings) -> int:
    if args.state_dir:
        _run_demo(Path(args.state_dir), settings)
    else:
        with tempfile.TemporaryDirectory(prefix="prism-demo-") as tmp:
            _run_demo(Path(tmp), settings)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prism-crypto", description="X3DH and Double Ratchet toolkit")
    parser.add_argument("--log-level", help="logging level (default: PRISM_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    keygen = subparsers.add_parser("keygen", help="create an identity key and print a signed key bundle")
    keygen.add_argument("--user", required=True, help="user id, used as the key sub-directory")
    keygen.add_argument("--key-dir", help="identity key directory (default: PRISM_KEY_DIR)")
    keygen.add_argument("--password", help="key file password (default: PRISM_PASSWORD or prompt)")
    keygen.add_argument("--prekeys", type=int, help="number of one-time prekeys to generate")
    keygen.set_defaults(func=cmd_keygen)

    demo = subparsers.add_parser("demo", help="run an Alice/Bob exchange in process")
    demo.add_argument("--state-dir", help="keep session files here instead of a temporary directory")
    demo.set_defaults(func=cmd_demo)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    configure_logging(args.log_level or settings.log_level)

    try:
        return args.func(args, settings)
    except PrismCryptoError as e:
        ErrorHandler().handle_error(e, args.command)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
