import logging

from flask import Flask
from flask_sock import Sock

from examsecure.config import load_config
from examsecure.storage import Storage
from examsecure.identity import TokenIdentity
from examsecure.registry import ConnectionRegistry
from examsecure.channel import SessionChannel
from examsecure.routes import api

logger = logging.getLogger(__name__)


def create_app(config=None):
    config = load_config(config)
    logging.basicConfig(
        level=getattr(logging, config["LOG_LEVEL"], logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = Flask(__name__)
    app.config.update(config)

    storage = Storage(config["DB_PATH"])
    storage.init_db()
    identity = TokenIdentity(
        storage,
        secret=config["JWT_SECRET"],
        algorithm=config["JWT_ALGORITHM"],
        exp_days=config["JWT_EXP_DAYS"],
        verify_signature=config["JWT_VERIFY_SIGNATURE"],
    )
    if not config["JWT_VERIFY_SIGNATURE"]:
        logger.warning("JWT_VERIFY_SIGNATURE is off; WebSocket tokens are decoded without verification.")

    # one registry per app instance
    registry = ConnectionRegistry()
    channel = SessionChannel(registry, storage, identity)
    app.extensions["examsecure"] = {
        "storage": storage,
        "identity": identity,
        "registry": registry,
        "channel": channel,
    }

    app.register_blueprint(api)

    sock = Sock(app)

    @sock.route("/ws")
    def ws_handler(ws):
        channel.serve(ws)

    return app


# ----------------- RUN -----------------
def main():
    app = create_app()
    host, port = app.config["HOST"], app.config["PORT"]
    logger.info("Starting Flask server at http://%s:%s", host, port)
    app.run(host=host, port=port, threaded=True)


if __name__ == "__main__":
    main()
