import typer

from simctl.commands import servers

app = typer.Typer()


@app.callback()
def callback():
    """
    File Simulator control CLI
    """


app.command("list")(servers.list_servers)
app.command("get")(servers.get_server)
app.command("delete")(servers.delete_server)
app.command("stop")(servers.stop_server)
app.command("start")(servers.start_server)
app.command("restart")(servers.restart_server)
app.command("discovery")(servers.show_discovery)
app.command("export")(servers.export_configuration)
app.command("import")(servers.import_configuration)
app.add_typer(servers.create_app, name="create")
