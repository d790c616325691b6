from donation_thermometer import cli

if __name__ == "__main__":
    cli.app()
