# if commands in this file are not working make sure you set the FLASK_APP environment variable.
# e.g. export FLASK_APP=wsgi.py
import asyncio
import json

import click
from flask import current_app

from fedsync import db
from fedsync.activitypub.signature import RsaKeys
from fedsync.federation.collection_sync import generate_sync_header
from fedsync.federation.reconciler import CollectionReconciler
from fedsync.federation.scheduler import JobRunner, get_registered_jobs
from fedsync.federation.store import FollowerStore


def register(app):
    @app.cli.group()
    def federation():
        """Federation maintenance commands."""
        pass

    @federation.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        print('Database tables created')

    @federation.command("generate-keys")
    def generate_keys():
        """Print a new RSA keypair for the instance actor."""
        private_key, public_key = RsaKeys.generate_keypair()
        print(private_key)
        print(public_key)

    @federation.command("worker")
    @click.option('--interval', default=None, type=float, help='Seconds between queue checks')
    def worker(interval):
        """Run scheduled jobs until interrupted."""
        print(f"Jobs: {', '.join(get_registered_jobs())}")
        runner = JobRunner(current_app._get_current_object(), check_interval=interval)
        try:
            asyncio.run(runner.run_forever())
        except KeyboardInterrupt:
            print('Stopped')

    @federation.command("reconcile")
    @click.argument('local_actor_id', type=int)
    @click.argument('remote_actor_uri')
    @click.argument('url')
    def reconcile(local_actor_id, remote_actor_uri, url):
        """Reconcile follow state with a remote partial followers collection right now."""
        result = CollectionReconciler().reconcile(local_actor_id, remote_actor_uri, {'url': url})
        if result is None:
            print(f'Nothing done, could not use {url}')
            return
        print(json.dumps({'confirmed': result.confirmed, 'accepted': result.accepted,
                          'rejected': result.rejected, 'remaining': result.remaining}, indent=2))

    @federation.command("follow")
    @click.argument('local_actor_id', type=int)
    @click.argument('remote_actor_uri')
    @click.argument('activity_id')
    def follow(local_actor_id, remote_actor_uri, activity_id):
        """Record a Follow sent elsewhere, leaving the relationship pending."""
        relationship = FollowerStore().record_follow(local_actor_id, remote_actor_uri, activity_id)
        print(f'{local_actor_id} -> {remote_actor_uri}: {relationship.state.value}')

    @federation.command("sync-header")
    @click.argument('local_actor_id', type=int)
    @click.argument('authority')
    def sync_header(local_actor_id, authority):
        """Show the Collection-Synchronization header we would send to an authority."""
        header = generate_sync_header(local_actor_id, authority)
        print(header if header else 'No followers on that authority')
