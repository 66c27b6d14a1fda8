from batsched.cli import cli

if __name__ == "__main__":
    cli()  # pragma: no cover
