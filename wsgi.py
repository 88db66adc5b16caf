from flask import request, current_app

from fedsync import create_app, db

app = create_app()


@app.shell_context_processor
def make_shell_context():
    return {'db': db, 'app': app}


@app.after_request
def after_request(response):
    if response.content_type and response.content_type.startswith('application/activity+json'):
        response.headers.setdefault('Vary', 'Accept, Signature')
    if current_app.config['HTTP_PROTOCOL'] == 'https' and request.path != '/inbox':
        response.headers['Strict-Transport-Security'] = 'max-age=63072000; includeSubDomains; preload'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


@app.teardown_appcontext
def shutdown_session(exception=None):
    if exception:
        db.session.rollback()
    db.session.remove()
