"""Initialize the job store database."""

from src.optimizer.config import AppConfig, build_database


def main() -> None:
    config = AppConfig.build_default()
    build_database(config.database_url)
    print("Database initialized.")


if __name__ == "__main__":
    main()
