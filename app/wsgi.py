from app.stackkit import create_app

app = create_app()
