import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "signal_engine.server:app",
        host=os.getenv("ENGINE_HOST", "0.0.0.0"),
        port=int(os.getenv("ENGINE_PORT", "8001")),
        log_level="info",
    )


if __name__ == "__main__":
    main()
