from __future__ import annotations

import argparse

from .app import create_forms_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the dynamic forms evaluation service")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    app = create_forms_app()
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
