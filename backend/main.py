import os

from tumulte import create_app
from tumulte.extensions import socketio

app = create_app()

if __name__ == "__main__":
    host = os.getenv("FLASK_HOST", "0.0.0.0")
    port = int(os.getenv("FLASK_PORT", "5000"))
    debug = os.getenv("TUMULTE_ENV", "dev") == "dev"

    # The reloader would start a second scheduler in the child process
    socketio.run(app, host=host, port=port, debug=debug, use_reloader=False)
