from guildvault.cli import app

app()
