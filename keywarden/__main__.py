from keywarden.cli import app

app(prog_name="keywarden")
