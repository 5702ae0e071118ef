"""Entry point: ``python main.py`` runs the relay with settings from config.ini and WAR_* variables."""

from wa_relay.server import main


if __name__ == "__main__":
    main()
