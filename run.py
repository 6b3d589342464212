"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py db init        # first time only
    flask --app run.py db migrate
    flask --app run.py db upgrade
    flask --app run.py seed-demo
    flask --app run.py create-user admin --role ADMIN
    flask --app run.py --debug run

"""

from bidtab import create_app

# WSGI application object; `flask run` and WSGI servers look for this `app` variable.
app = create_app()

if __name__ == "__main__":
    # Direct `python run.py` usage is for development only; use `flask run` or a WSGI server otherwise.
    app.run(debug=True)
