# recstream/app.py
# Playback + observability HTTP surface:
#   - GET    /hls/<session_id>/playlist.m3u8   -> manifest
#   - GET    /hls/<session_id>/segment-N.ts    -> media segment
#   - GET    /sessions/<session_id>            -> lifecycle + manifest summary
#   - POST   /sessions/<session_id>/finalize   -> close the manifest
#   - DELETE /sessions/<session_id>            -> reclaim storage
#   - GET    /jobs, /jobs/<job_id>             -> queue history

import os
import time
from math import ceil

import humanize
from flask import Flask, jsonify, request, send_file

from . import tasks
from .common import InvalidSessionId, SessionClosedError, as_int, get_logging
from .layout import segment_index

app = Flask(__name__)
logger = get_logging("recstream.app")

MANIFEST_MIMETYPE = 'application/vnd.apple.mpegurl'
SEGMENT_MIMETYPE = 'video/MP2T'


@app.errorhandler(InvalidSessionId)
def _invalid_session(e):
    return jsonify({'error': str(e)}), 400


@app.errorhandler(SessionClosedError)
def _session_closed(e):
    return jsonify({'error': str(e), 'reason': e.reason}), 409


# ------------------------ Playback -------------------------

@app.get('/hls/<session_id>/playlist.m3u8')
def playlist(session_id):
    path = tasks.processor.get_playlist_path(session_id)
    if not os.path.isfile(path):
        return jsonify({'error': 'Playlist not found'}), 404
    # manifests change while recording; never let a proxy hold on to one
    return send_file(path, mimetype=MANIFEST_MIMETYPE, conditional=True, max_age=0)


@app.get('/hls/<session_id>/<name>')
def segment(session_id, name):
    idx = segment_index(name)
    if idx is None:
        return jsonify({'error': 'Not found'}), 404
    path = tasks.processor.layout.segment_path(session_id, idx)
    if not os.path.isfile(path):
        return jsonify({'error': 'Segment not found'}), 404
    return send_file(path, mimetype=SEGMENT_MIMETYPE, conditional=True)


# ------------------------ Sessions -------------------------

@app.get('/sessions/<session_id>')
def session_status(session_id):
    info = tasks.processor.session_info(session_id)
    if info['state'] is None and not info['directory_exists']:
        return jsonify({'error': 'Session not found'}), 404
    info['playlist_size_human'] = humanize.naturalsize(info['playlist_size'])
    info['playlist_url'] = f"/{tasks.processor.get_relative_playlist_path(session_id)}"
    return jsonify(info)


@app.post('/sessions/<session_id>/finalize')
def finalize_session(session_id):
    tasks.processor.finalize_playlist(session_id)
    logger.info(f"[{session_id}] Finalized via API")
    return jsonify({'status': 'finalized',
                    'playlist_path': tasks.processor.get_relative_playlist_path(session_id)}), 200


@app.delete('/sessions/<session_id>')
def delete_session(session_id):
    tasks.processor.cleanup(session_id)
    logger.info(f"[{session_id}] Reclaimed via API")
    return jsonify({'status': 'deleted'}), 200


# ------------------------ Jobs API -------------------------

@app.get('/jobs')
def list_jobs():
    status = (request.args.get('status') or 'completed').lower()
    if status not in ('active', 'completed', 'failed'):
        return jsonify({'error': f'Unknown status {status!r}'}), 400

    page = max(1, as_int(request.args.get('page'), 1))
    page_size = min(max(1, as_int(request.args.get('page_size'), 20)), 100)

    total = tasks.ledger.count(status)
    total_pages = max(1, ceil(total / page_size))
    page = min(page, total_pages)
    items = tasks.ledger.list(status, offset=(page - 1) * page_size, limit=page_size)

    now = time.time()
    for job in items:
        ended = float(job.get('ended_at') or 0)
        if ended:
            job['ended_ago'] = humanize.naturaltime(now - ended)

    return jsonify({
        'status': status,
        'page': page,
        'page_size': page_size,
        'total': total,
        'total_pages': total_pages,
        'items': items,
    })


@app.get('/jobs/<job_id>')
def job_properties(job_id):
    job = tasks.ledger.get(job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(job)


def main():
    app.run(host=os.environ.get("BIND_HOST", "0.0.0.0"),
            port=as_int(os.environ.get("PORT"), 5005))


if __name__ == '__main__':
    main()
