from filevault import create_app

app = create_app()
