"""
Entry point for the event capture backend.

    python run_server.py --host 0.0.0.0 --port 8000

Settings come from the environment / .env (see capture/core/config.py).
Keep a single worker: the session index lives in process memory.
"""
import uvicorn


def main():
    import argparse
    parser = argparse.ArgumentParser()
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=8000)
    parser.add_argument('--log-level', default='info')
    args = parser.parse_args()

    uvicorn.run(
        'capture.main:app',
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == '__main__':
    main()
