import os
import socket
import sys
import time


def main():
    print(f"Dummy service {os.environ.get('STACKUP_SERVICE')} starting...")
    print(f"APP_ENV: {os.environ.get('APP_ENV')}")
    sys.stdout.flush()

    port = os.environ.get("LISTEN_PORT")
    server = None
    if port:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind(("127.0.0.1", int(port)))
        server.listen()
        print(f"Listening on {port}")
        sys.stdout.flush()

    if os.environ.get("EXIT_CODE"):
        sys.exit(int(os.environ["EXIT_CODE"]))

    for i in range(60):
        time.sleep(0.5)

    if server is not None:
        server.close()
    print("Dummy service finishing.")


if __name__ == "__main__":
    main()
