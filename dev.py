#!/usr/bin/env python3

"""
Development utility for the OAuth 2.0 PKCE servers
"""

import argparse
import os
import subprocess
import sys
from pathlib import Path

SERVERS = {
    "auth": ("main:app", "PORT", "3000"),
    "resource": ("resource_server:app", "RESOURCE_PORT", "5000"),
    "client": ("client_app:app", "CLIENT_PORT", "4000"),
}


def run_command(cmd, capture_output=False, check=True):
    """Run a shell command"""
    print(f"🔧 Running: {cmd}")
    result = subprocess.run(cmd, shell=True, capture_output=capture_output, text=True)
    if check and result.returncode != 0:
        print(f"❌ Command failed with exit code {result.returncode}")
        if capture_output:
            print(result.stderr)
        sys.exit(result.returncode)
    return result.stdout.strip() if capture_output else None


def generate_keys(output_dir: Path, key_id: str):
    """Generate an RSA signing key pair as PEM files"""
    from keys import KeyManager

    output_dir.mkdir(parents=True, exist_ok=True)
    private_path = output_dir / "private.pem"
    public_path = output_dir / "public.pem"

    if private_path.exists():
        print(f"⚠️  {private_path} already exists, refusing to overwrite")
        return False

    KeyManager.generate(key_id).write_pem(private_path, public_path)

    print(f"🔑 Private key: {private_path}")
    print(f"🔓 Public key:  {public_path}")
    print(f"   export SIGNING_KEY_PATH={private_path}")
    print(f"   export SIGNING_KEY_ID={key_id}")
    return True


def run_server(role: str):
    """Run one of the servers with auto-reload"""
    target, port_env, default_port = SERVERS[role]
    port = os.getenv(port_env, default_port)
    print(f"🚀 Starting {role} server on port {port}...")
    run_command(f"uvicorn {target} --host 127.0.0.1 --port {port} --reload")


def run_tests():
    """Run the pytest suite"""
    print("🧪 Running tests...")
    run_command(f"{sys.executable} -m pytest -q tests")


def run_smoke(url: str, resource_url: str):
    """Run the live smoke test against running servers"""
    run_command(f"{sys.executable} test_server.py --url {url} --resource-url {resource_url}")


def check_env():
    """Validate the configuration from the current environment"""
    from config import Config

    try:
        config = Config()
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    print("✅ Environment configuration looks good!")
    print("\n📋 Current configuration:")
    print(f"   Environment: {config.environment}")
    print(f"   Issuer: {config.issuer}")
    print(f"   Signing key: {config.signing_key_path or 'ephemeral (development only)'}")
    print(f"   Key id: {config.signing_key_id} ({config.signing_algorithm})")
    print(f"   Clients: {', '.join(config.clients)}")
    print(f"   Code / access / refresh expiry: {config.oauth_code_expiry}s / "
          f"{config.oauth_token_expiry}s / {config.oauth_refresh_token_expiry}s")
    print(f"   JWKS URL: {config.jwks_url}")

    if config.signing_key_path and not Path(config.signing_key_path).exists():
        print(f"⚠️  SIGNING_KEY_PATH {config.signing_key_path} does not exist")
        return False
    return True


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for the OAuth 2.0 PKCE servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python dev.py keygen --out keys    # Write keys/private.pem and keys/public.pem
  python dev.py run auth             # Authorization server on :3000
  python dev.py run resource         # Resource server on :5000
  python dev.py run client           # Demo client on :4000
  python dev.py test                 # Run the pytest suite
  python dev.py smoke                # Smoke test running servers
  python dev.py check                # Validate environment configuration
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    keygen = subparsers.add_parser("keygen", help="Generate an RSA signing key pair")
    keygen.add_argument("--out", default="keys", help="Output directory (default: keys)")
    keygen.add_argument("--kid", default=os.getenv("SIGNING_KEY_ID", "demo-key-1"), help="Key identifier")

    run = subparsers.add_parser("run", help="Run a development server")
    run.add_argument("role", choices=sorted(SERVERS))

    subparsers.add_parser("test", help="Run tests")

    smoke = subparsers.add_parser("smoke", help="Smoke test running servers")
    smoke.add_argument("--url", default="http://localhost:3000")
    smoke.add_argument("--resource-url", default="http://localhost:5000")

    subparsers.add_parser("check", help="Check environment configuration")

    args = parser.parse_args()

    # Change to script directory
    os.chdir(Path(__file__).parent)

    print("🛠️  OAuth 2.0 PKCE Servers - Development Utility")
    print("=" * 60)

    if args.command == "keygen":
        success = generate_keys(Path(args.out), args.kid)
    elif args.command == "run":
        run_server(args.role)
        success = True
    elif args.command == "test":
        run_tests()
        success = True
    elif args.command == "smoke":
        run_smoke(args.url, args.resource_url)
        success = True
    else:
        success = check_env()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
