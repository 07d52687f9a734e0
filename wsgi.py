from charforge import create_app

app = create_app()
