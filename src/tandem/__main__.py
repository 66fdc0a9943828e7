from tandem.cli.main import app

app(prog_name="tandem")
