import uvicorn

from .config import Settings


def main() -> None:
    settings = Settings()
    # Fail before binding the port when the environment is unusable
    settings.validate()
    uvicorn.run(
        "nim_relay.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
