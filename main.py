import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "leasing_agent.server:build_default_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
