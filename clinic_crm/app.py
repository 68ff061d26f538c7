import os
from datetime import date, datetime

from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

from . import config
from .cascade import cascade_delete_subject
from .db import check_db, clean_input_data, get_db, id_query, serialize_doc, serialize_value
from .exports import XLSX_MIMETYPE, export_filename, export_period_workbook
from .payroll import salary_summary
from .records import PeriodKey, aggregate_by_period, normalize_date, parse_amount, parse_record_date
from .resources import (
    PATIENT_DEPENDENTS, PAYROLL_RESOURCES, RESOURCES, SUBJECT_KINDS, SUBJECT_STATUSES,
    SUBJECTS_BY_PATH, get_subject_kind,
)

app = Flask(__name__)

# --- CONFIGURATION ---
print("=== Application Starting ===")
if not config.MONGO_URI:
    print("WARNING: MONGO_URI environment variable is missing!")

app.config["UPLOAD_FOLDER"] = config.UPLOAD_FOLDER
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_MB * 1024 * 1024
app.config["ALLOWED_UPLOAD_EXTENSIONS"] = config.ALLOWED_UPLOAD_EXTENSIONS
app.config["CASCADE_TIMEOUT"] = config.CASCADE_TIMEOUT


# --- RESPONSE ENVELOPE ---

def ok(data=None, message=None, status=200):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return jsonify(body), status


def fail(message, status=500, data=None):
    body = {"success": False, "message": message}
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def db_error():
    return fail("Database error", 500)


@app.errorhandler(413)
def upload_too_large(e):
    return fail(f"File too large (limit {config.MAX_UPLOAD_MB} MB)", 413)


# --- HELPERS ---

def period_from_args():
    """Month/year query parameters (1-based month); current month when absent."""
    today = date.today()
    return PeriodKey.of(request.args.get('month', today.month), request.args.get('year', today.year))


def json_object_body():
    """Request JSON as a stripped dict; None when the body is JSON but not an object."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        return None
    return clean_input_data(data)


def not_deleted(query=None):
    query = dict(query or {})
    query['is_deleted'] = {'$ne': True}
    return query


def find_active_subject(subject, subject_id):
    return get_db()[subject.collection].find_one(not_deleted(id_query(subject_id)))


def next_subject_id(subject):
    prefix = subject.id_prefix
    numbers = []
    for doc in get_db()[subject.collection].find({'_id': {'$regex': f'^{prefix}[0-9]+$'}}, {'_id': 1}):
        numbers.append(int(doc['_id'][len(prefix):]))
    return f"{prefix}{max(numbers, default=0) + 1:03d}"


def sort_newest_first(docs, resource):
    return sorted(
        docs,
        key=lambda d: (parse_record_date(d.get(resource.date_field)) or date.min, str(d.get('created_at') or '')),
        reverse=True,
    )


def load_documents(resource, query=None):
    docs = [serialize_doc(d) for d in get_db()[resource.collection].find(query or {})]
    return sort_newest_first(docs, resource)


def validate_record(resource, data, partial=False):
    """Normalize dates to ISO and amounts to numbers before they reach storage."""
    if not partial:
        for required in (resource.subject_field, resource.date_field):
            if not data.get(required):
                raise ValueError(f"Missing required field: {required}")
        if resource.is_financial and data.get(resource.amount_field) in (None, ''):
            raise ValueError(f"Missing required field: {resource.amount_field}")

    if resource.date_field in data:
        data[resource.date_field] = normalize_date(data[resource.date_field])
    if resource.is_financial and resource.amount_field in data:
        data[resource.amount_field] = parse_amount(data[resource.amount_field])
    if resource.statuses:
        if 'status' in data and data['status'] not in resource.statuses:
            raise ValueError(f"Status must be one of: {', '.join(resource.statuses)}")
        if not partial:
            data.setdefault('status', resource.statuses[0])
    if resource.subject_field in data:
        data[resource.subject_field] = str(data[resource.subject_field])
    return data


def validate_subject(data, partial=False):
    if not partial and not data.get('name'):
        raise ValueError("Missing required field: name")
    if 'status' in data and data['status'] not in SUBJECT_STATUSES:
        raise ValueError(f"Status must be one of: {', '.join(SUBJECT_STATUSES)}")
    if data.get('join_date'):
        data['join_date'] = normalize_date(data['join_date'])
    if data.get('salary') not in (None, ''):
        data['salary'] = parse_amount(data['salary'])
    return data


def soft_delete_subject(subject, subject_id, deleted_by='System'):
    result = get_db()[subject.collection].update_one(
        not_deleted(id_query(subject_id)),
        {'$set': {'is_deleted': True, 'deleted_at': datetime.now(), 'deleted_by': deleted_by}}
    )
    return result.matched_count > 0


@app.route('/api', methods=['GET'])
def api_index():
    return ok({
        'subjects': [s.path for s in SUBJECT_KINDS.values()],
        'resources': [r.name for r in RESOURCES.values()],
    })


# ============================================================
#  COLLECTIONS: SUBJECTS (patients/staff/doctors) AND RECORDS
# ============================================================

@app.route('/api/<name>', methods=['GET'])
def list_collection(name):
    subject = SUBJECTS_BY_PATH.get(name)
    resource = RESOURCES.get(name)
    if subject is None and resource is None:
        return fail(f"Unknown resource: {name}", 404)
    if not check_db(): return db_error()
    try:
        if subject is not None:
            query = not_deleted()
            if request.args.get('status'):
                query['status'] = request.args['status']
            docs = [serialize_doc(d) for d in get_db()[subject.collection].find(query).sort('name', 1)]
            return ok(docs)
        return ok(load_documents(resource))
    except Exception as e:
        print(f"Fetch {name} Error: {e}")
        return fail(f"Failed to fetch {name}: {e}", 500)


@app.route('/api/<name>', methods=['POST'])
def create_in_collection(name):
    subject = SUBJECTS_BY_PATH.get(name)
    resource = RESOURCES.get(name)
    if subject is None and resource is None:
        return fail(f"Unknown resource: {name}", 404)
    if not check_db(): return db_error()

    data = json_object_body()
    if data is None:
        return fail("Request body must be a JSON object", 400)
    try:
        if subject is not None:
            return _create_subject(subject, data)
        return _create_record(resource, data)
    except ValueError as e:
        return fail(str(e), 400)
    except Exception as e:
        print(f"Create {name} Error: {e}")
        return fail(f"Failed to create {name} record: {e}", 500)


def _create_subject(subject, data):
    validate_subject(data)
    subject_id = str(data.pop('id', '') or data.pop('_id', '') or next_subject_id(subject))
    data.pop('_id', None)
    collection = get_db()[subject.collection]
    if collection.find_one(id_query(subject_id)):
        return fail(f"{subject.label} {subject_id} already exists", 409)

    data['_id'] = subject_id
    data['status'] = data.get('status') or 'Active'
    data['documents'] = data.get('documents') or []
    data['is_deleted'] = False
    data['created_at'] = datetime.now()
    data['updated_at'] = data['created_at']
    collection.insert_one(data)
    return ok(serialize_doc(data), f"{subject.label} created", 201)


def _create_record(resource, data):
    data.pop('id', None)
    data.pop('_id', None)
    validate_record(resource, data)

    subject = SUBJECT_KINDS[resource.subject_kind]
    owner = find_active_subject(subject, data[resource.subject_field])
    if owner is None:
        return fail(f"{subject.label} {data[resource.subject_field]} not found", 404)
    # Name captured at creation time; not kept in sync afterwards
    if not data.get(resource.name_field):
        data[resource.name_field] = owner.get('name', '')

    data['created_at'] = datetime.now()
    data['updated_at'] = data['created_at']
    result = get_db()[resource.collection].insert_one(data)
    created = get_db()[resource.collection].find_one({'_id': result.inserted_id})
    return ok(serialize_doc(created), f"{resource.label} created successfully", 201)


@app.route('/api/<name>/deleted', methods=['GET'])
def list_deleted_subjects(name):
    subject = SUBJECTS_BY_PATH.get(name)
    if subject is None:
        return fail(f"Unknown subject list: {name}", 404)
    if not check_db(): return db_error()
    try:
        cursor = get_db()[subject.collection].find({'is_deleted': True}).sort('deleted_at', -1)
        return ok([serialize_doc(d) for d in cursor])
    except Exception as e:
        print(f"Deleted {name} Fetch Error: {e}")
        return fail(str(e), 500)


@app.route('/api/<name>/next-id', methods=['GET'])
def get_next_subject_id(name):
    subject = SUBJECTS_BY_PATH.get(name)
    if subject is None:
        return fail(f"Unknown subject list: {name}", 404)
    if not check_db(): return db_error()
    try:
        return ok({'next_id': next_subject_id(subject)})
    except Exception as e:
        print(f"Next ID Error: {e}")
        return fail(str(e), 500)


@app.route('/api/<name>/summary', methods=['GET'])
def get_period_summary(name):
    """Total of one month's records, overall and per subject."""
    resource = RESOURCES.get(name)
    if resource is None:
        return fail(f"Unknown resource: {name}", 404)
    try:
        period = period_from_args()
    except ValueError as e:
        return fail(str(e), 400)
    if not check_db(): return db_error()
    try:
        subject_id = request.args.get('subject_id') or None
        aggregate = aggregate_by_period(load_documents(resource), period, subject_id=subject_id, resource=resource)
        return ok(aggregate.to_dict())
    except Exception as e:
        print(f"Summary {name} Error: {e}")
        return fail(f"Failed to summarise {name}: {e}", 500)


@app.route('/api/<name>/export', methods=['GET'])
def export_period(name):
    resource = RESOURCES.get(name)
    if resource is None:
        return fail(f"Unknown resource: {name}", 404)
    try:
        period = period_from_args()
    except ValueError as e:
        return fail(str(e), 400)
    if not check_db(): return db_error()
    try:
        aggregate = aggregate_by_period(load_documents(resource), period, resource=resource)
        output = export_period_workbook(aggregate, resource)
        return send_file(output, as_attachment=True, download_name=export_filename(resource, period),
                         mimetype=XLSX_MIMETYPE)
    except Exception as e:
        print(f"Export {name} Error: {e}")
        return fail(f"Failed to export {name}: {e}", 500)


@app.route('/api/<name>/<item_id>', methods=['GET'])
def get_item(name, item_id):
    subject = SUBJECTS_BY_PATH.get(name)
    resource = RESOURCES.get(name)
    if subject is None and resource is None:
        return fail(f"Unknown resource: {name}", 404)
    if not check_db(): return db_error()
    try:
        if subject is not None:
            doc = find_active_subject(subject, item_id)
            if doc is None:
                return fail(f"{subject.label} not found", 404)
        else:
            doc = get_db()[resource.collection].find_one(id_query(item_id))
            if doc is None:
                return fail(f"{resource.label} not found", 404)
        return ok(serialize_doc(doc))
    except Exception as e:
        print(f"Fetch {name}/{item_id} Error: {e}")
        return fail(str(e), 500)


@app.route('/api/<name>/<item_id>', methods=['PUT'])
def update_item(name, item_id):
    subject = SUBJECTS_BY_PATH.get(name)
    resource = RESOURCES.get(name)
    if subject is None and resource is None:
        return fail(f"Unknown resource: {name}", 404)
    if not check_db(): return db_error()

    data = json_object_body()
    if data is None:
        return fail("Request body must be a JSON object", 400)
    # Remove immutable/bookkeeping fields
    for key in ('id', '_id', 'created_at', 'is_deleted', 'deleted_at', 'deleted_by'):
        data.pop(key, None)
    if not data:
        return fail("No fields to update", 400)

    try:
        if subject is not None:
            validate_subject(data, partial=True)
            query = not_deleted(id_query(item_id))
            collection = get_db()[subject.collection]
            label = subject.label
        else:
            validate_record(resource, data, partial=True)
            if resource.subject_field in data:
                owner_kind = SUBJECT_KINDS[resource.subject_kind]
                if find_active_subject(owner_kind, data[resource.subject_field]) is None:
                    return fail(f"{owner_kind.label} {data[resource.subject_field]} not found", 404)
            query = id_query(item_id)
            collection = get_db()[resource.collection]
            label = resource.label

        data['updated_at'] = datetime.now()
        result = collection.update_one(query, {'$set': data})
        if result.matched_count == 0:
            return fail(f"{label} not found", 404)
        return ok(serialize_doc(collection.find_one(query)), f"{label} updated successfully")
    except ValueError as e:
        return fail(str(e), 400)
    except Exception as e:
        print(f"Update {name}/{item_id} Error: {e}")
        return fail(str(e), 500)


@app.route('/api/<name>/<item_id>', methods=['DELETE'])
def delete_item(name, item_id):
    subject = SUBJECTS_BY_PATH.get(name)
    resource = RESOURCES.get(name)
    if subject is None and resource is None:
        return fail(f"Unknown resource: {name}", 404)
    if not check_db(): return db_error()
    try:
        if subject is not None:
            # Subjects are soft deleted so they can be restored
            body = json_object_body() or {}
            if not soft_delete_subject(subject, item_id, body.get('deletedBy', 'System')):
                return fail(f"{subject.label} not found", 404)
            return ok({'id': item_id}, f"{subject.label} deleted successfully")

        result = get_db()[resource.collection].delete_one(id_query(item_id))
        if result.deleted_count == 0:
            return fail(f"{resource.label} not found", 404)
        return ok({'id': item_id}, f"{resource.label} deleted successfully")
    except Exception as e:
        print(f"Delete Error: {e}")
        return fail(str(e), 500)


@app.route('/api/<name>/<item_id>/restore', methods=['PUT'])
def restore_subject(name, item_id):
    subject = SUBJECTS_BY_PATH.get(name)
    if subject is None:
        return fail(f"Unknown subject list: {name}", 404)
    if not check_db(): return db_error()
    try:
        collection = get_db()[subject.collection]
        query = id_query(item_id)
        query['is_deleted'] = True
        result = collection.update_one(query, {
            '$set': {'is_deleted': False, 'updated_at': datetime.now()},
            '$unset': {'deleted_at': '', 'deleted_by': ''},
        })
        if result.matched_count == 0:
            return fail(f"Deleted {subject.label.lower()} not found", 404)
        return ok(serialize_doc(collection.find_one(id_query(item_id))), f"{subject.label} restored")
    except Exception as e:
        print(f"Restore Error: {e}")
        return fail(str(e), 500)


# --- RECORDS SCOPED TO ONE SUBJECT ---

def _scoped_resource(name, subject_kind):
    resource = RESOURCES.get(name)
    if resource is None:
        return None, fail(f"Unknown resource: {name}", 404)
    if get_subject_kind(subject_kind) is None or get_subject_kind(subject_kind).kind != resource.subject_kind:
        return None, fail(f"{name} records belong to {resource.subject_kind}, not {subject_kind}", 400)
    return resource, None


@app.route('/api/<name>/<subject_kind>/<subject_id>', methods=['GET'])
def list_subject_records(name, subject_kind, subject_id):
    resource, error = _scoped_resource(name, subject_kind)
    if error: return error
    if not check_db(): return db_error()
    try:
        return ok(load_documents(resource, {resource.subject_field: str(subject_id)}))
    except Exception as e:
        print(f"Fetch {name} for {subject_id} Error: {e}")
        return fail(f"Failed to fetch {name}: {e}", 500)


@app.route('/api/<name>/<subject_kind>/<subject_id>', methods=['DELETE'])
def delete_subject_records(name, subject_kind, subject_id):
    resource, error = _scoped_resource(name, subject_kind)
    if error: return error
    if not check_db(): return db_error()
    try:
        result = get_db()[resource.collection].delete_many({resource.subject_field: str(subject_id)})
        return ok({'subject_id': subject_id, 'deleted_count': result.deleted_count},
                  f"All {resource.label.lower()} records deleted successfully")
    except Exception as e:
        print(f"Delete {name} for {subject_id} Error: {e}")
        return fail(f"Failed to delete {name}: {e}", 500)


# ============================================================
#  CASCADE DELETE (patient -> attendance/history/payments)
# ============================================================

@app.route('/api/patients/<patient_id>/cascade', methods=['DELETE'])
def cascade_delete_patient(patient_id):
    if not check_db(): return db_error()
    database = get_db()
    body = json_object_body() or {}
    patient_kind = SUBJECT_KINDS['patient']

    def delete_dependent(resource):
        return database[resource.collection].delete_many({resource.subject_field: str(patient_id)}).deleted_count

    def delete_patient():
        if not soft_delete_subject(patient_kind, patient_id, body.get('deletedBy', 'System')):
            raise LookupError(f"Patient {patient_id} not found")
        return {'id': patient_id}

    deleters = {kind: (lambda r=RESOURCES[name]: delete_dependent(r)) for kind, name in PATIENT_DEPENDENTS.items()}
    try:
        result = cascade_delete_subject(patient_id, deleters, delete_patient,
                                        timeout=app.config["CASCADE_TIMEOUT"])
    except Exception as e:
        print(f"Cascade Delete Error: {e}")
        return fail(f"Failed to delete patient and related records: {e}", 500)

    if result.ok:
        return ok(result.to_dict(), "Patient and related records deleted successfully")
    error = result.primary_result.error
    status = 404 if isinstance(error, LookupError) else 500
    return fail(f"Failed to delete patient and related records: {error}", status, data=result.to_dict())


# ============================================================
#  PAYROLL (staff / doctors)
# ============================================================

def _build_payroll(kind, period):
    subject = SUBJECT_KINDS[kind]
    sources = PAYROLL_RESOURCES[kind]
    payment_resource = RESOURCES[sources['payments']]
    advance_resource = RESOURCES[sources['advances']]
    database = get_db()

    subjects = [serialize_doc(d) for d in database[subject.collection].find(not_deleted())]
    payments = [serialize_doc(d) for d in database[payment_resource.collection].find()]
    advances = [serialize_doc(d) for d in database[advance_resource.collection].find()]

    previous = period.previous()
    snapshot = database.salary_snapshots.find_one({
        'subject_kind': kind, 'month': previous.month, 'year': previous.year
    })
    carry_forward = snapshot.get('carry_forward_to_next', {}) if snapshot else {}

    return salary_summary(subjects, payments, advances, period,
                          payment_resource=payment_resource, advance_resource=advance_resource,
                          carry_forward=carry_forward)


@app.route('/api/payroll/<kind>', methods=['GET'])
def get_payroll(kind):
    if kind not in PAYROLL_RESOURCES:
        return fail(f"No payroll for {kind}", 404)
    try:
        period = period_from_args()
    except ValueError as e:
        return fail(str(e), 400)
    if not check_db(): return db_error()
    try:
        return ok(_build_payroll(kind, period).to_dict())
    except Exception as e:
        print(f"Payroll Error: {e}")
        return fail(f"Failed to build {kind} payroll: {e}", 500)


@app.route('/api/payroll/<kind>/close', methods=['POST'])
def close_payroll_month(kind):
    """Store the month's closing balances; they carry forward into the next month."""
    if kind not in PAYROLL_RESOURCES:
        return fail(f"No payroll for {kind}", 404)
    try:
        period = period_from_args()
    except ValueError as e:
        return fail(str(e), 400)
    if not check_db(): return db_error()
    try:
        summary = _build_payroll(kind, period)
        snapshot = {
            'subject_kind': kind,
            'month': period.month,
            'year': period.year,
            'rows': [r.to_dict() for r in summary.rows],
            'carry_forward_to_next': summary.carry_forward_to_next(),
            'closed_at': datetime.now(),
        }
        get_db().salary_snapshots.update_one(
            {'subject_kind': kind, 'month': period.month, 'year': period.year},
            {'$set': snapshot},
            upsert=True
        )
        return ok(summary.to_dict(), f"{period.label()} closed")
    except Exception as e:
        print(f"Close Payroll Error: {e}")
        return fail(f"Failed to close {kind} payroll: {e}", 500)


# ============================================================
#  DOCUMENT UPLOADS
# ============================================================

def _allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in app.config["ALLOWED_UPLOAD_EXTENSIONS"]


@app.route('/api/uploads/<subject_kind>/<subject_id>', methods=['POST'])
def upload_subject_file(subject_kind, subject_id):
    subject = get_subject_kind(subject_kind)
    if subject is None:
        return fail(f"Unknown subject kind: {subject_kind}", 404)
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return fail("No file uploaded", 400)
    filename = secure_filename(upload.filename)
    if not filename or not _allowed_file(filename):
        return fail("File type not allowed", 400)
    if not check_db(): return db_error()
    try:
        if find_active_subject(subject, subject_id) is None:
            return fail(f"{subject.label} not found", 404)

        folder_id = secure_filename(str(subject_id))
        folder = os.path.join(app.config["UPLOAD_FOLDER"], subject.kind, folder_id)
        os.makedirs(folder, exist_ok=True)
        stored_name = f"{datetime.now().strftime('%Y%m%d%H%M%S%f')}_{filename}"
        upload.save(os.path.join(folder, stored_name))

        entry = {
            'name': filename,
            'path': f"{subject.kind}/{folder_id}/{stored_name}",
            'category': request.form.get('category', 'document'),
            'uploaded_at': datetime.now(),
        }
        get_db()[subject.collection].update_one(id_query(subject_id), {'$push': {'documents': entry}})
        return ok(serialize_value(entry), "File uploaded successfully", 201)
    except Exception as e:
        print(f"Upload Error: {e}")
        return fail(f"Failed to upload file: {e}", 500)


@app.route('/api/uploads/<subject_kind>/<subject_id>', methods=['GET'])
def list_subject_files(subject_kind, subject_id):
    subject = get_subject_kind(subject_kind)
    if subject is None:
        return fail(f"Unknown subject kind: {subject_kind}", 404)
    if not check_db(): return db_error()
    try:
        doc = find_active_subject(subject, subject_id)
        if doc is None:
            return fail(f"{subject.label} not found", 404)
        return ok(serialize_value(doc.get('documents', [])))
    except Exception as e:
        print(f"List Uploads Error: {e}")
        return fail(str(e), 500)


# --- HEALTH CHECK ENDPOINTS ---

@app.route('/health', methods=['GET'])
def health_check():
    """Lightweight health check endpoint for uptime monitoring"""
    return jsonify({"status": "ok", "timestamp": datetime.now().isoformat()}), 200


@app.route('/ping', methods=['GET', 'HEAD'])
def ping():
    return '', 200


if __name__ == '__main__':
    app.run(debug=True, port=5000)
