from typer import Typer

from buildserve.cli.commands import deps, serve

app = Typer(
    name="buildserve",
    help="Watch-mode build-and-serve for workspace projects",
    no_args_is_help=True,
)

app.command(name="serve")(serve)
app.command(name="deps")(deps)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
