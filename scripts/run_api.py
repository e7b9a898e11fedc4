from __future__ import annotations

import os

import uvicorn

from roomrender.apps.api.main import create_app


def main() -> None:
    # Serve the API with the container built from env-driven settings during lifespan startup.
    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))


if __name__ == "__main__":
    main()
