import argparse
import sys

import uvicorn

from main import EnvSettings


def main(reload=False):
    port = EnvSettings().port
    print(f"Running debug server on port {port}")
    uvicorn.run(
        "pinrelay.app:create_debug_app",
        factory=True,
        reload=reload,
        port=port,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run PinRelay in debug mode.")
    parser.add_argument("--reload", action="store_const", const=True)
    sys_args = parser.parse_args(sys.argv[1:])

    main(reload=sys_args.reload)
