from lunasync.cli import app

app(prog_name="lunasync")
