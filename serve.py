from __future__ import annotations

import uvicorn


def main() -> None:
    # APP_HOST / APP_PORT (or .env) are read by the app settings on import
    from apps.api.main import app, settings  # noqa: WPS433

    uvicorn.run(app, host=settings.app_host, port=settings.app_port, reload=False)


if __name__ == "__main__":
    main()
