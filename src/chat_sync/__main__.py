from chat_sync.cli.main import app

app(prog_name="chat-sync")
