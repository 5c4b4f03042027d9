import os

import uvicorn

from chat_core.api.app import create_app


def main() -> None:
    uvicorn.run(
        create_app(),
        host=os.getenv("CHAT_HOST", "127.0.0.1"),
        port=int(os.getenv("CHAT_PORT", "4000")),
    )


if __name__ == "__main__":
    main()
