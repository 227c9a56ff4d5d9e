from __future__ import annotations

import uvicorn

from jfsplitter.apps.proxy import create_app
from jfsplitter.core.config import get_settings


def main() -> None:
    # Run the proxy with env-driven settings; the user map is loaded before the listener binds.
    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.listen_host, port=settings.listen_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
