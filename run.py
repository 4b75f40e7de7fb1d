import sys
import logging
import argparse
from linkbook import create_app

log = logging.getLogger('werkzeug')
log.disabled = True
cli = sys.modules['flask.cli']
cli.show_server_banner = lambda *x: None


def main() -> None:
    p = argparse.ArgumentParser(prog="linkbook")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8080)
    p.add_argument("--log-level", default=None)
    args = p.parse_args()

    app = create_app()
    if args.log_level:
        app.logger.setLevel(args.log_level.upper())
    print(f"{app.config['APP_NAME']} starting on http://{args.host}:{args.port}", flush=True)
    app.run(host=args.host, port=args.port, debug=False)

if __name__ == "__main__":
    main()
