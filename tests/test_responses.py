import csv
import io

from formbuilder_crm.models import db, BulkUpload, LeadResponse, Submission, SwayamsevakResponse
from formbuilder_crm.services.export_service import detect_collection
from formbuilder_crm.services.response_service import organize_responses

SANGHA_ANSWERS = [
    {'fieldId': 'full-name', 'fieldType': 'text', 'fieldLabel': 'Full Name', 'value': 'Ravi'},
    {'fieldId': 'sangha-vibhaag', 'fieldType': 'unknown', 'fieldLabel': 'sangha-vibhaag', 'value': 'North'},
    {'fieldId': 'sangha-khanda', 'fieldType': 'unknown', 'fieldLabel': 'sangha-khanda', 'value': 'K1'},
    {'fieldId': 'sangha-valaya', 'fieldType': 'unknown', 'fieldLabel': 'sangha-valaya', 'value': 'V2'},
    {'fieldId': 'sangha-milan', 'fieldType': 'unknown', 'fieldLabel': 'sangha-milan', 'value': 'M3'},
    {'fieldId': 'whatsapp_optin_consent', 'fieldType': 'whatsapp_optin', 'fieldLabel': 'Consent', 'value': 'agreed'},
]


def test_organize_responses_folds_sangha_and_consent(app, make_form, make_submission):
    form_id = make_form()
    submission_id = make_submission(form_id, 'swayamsevak', responses=SANGHA_ANSWERS)

    with app.app_context():
        submission = db.session.get(Submission, submission_id)
        organized = organize_responses(submission, submission.form)

    assert organized['full-name'] == {'label': 'Full Name', 'value': 'Ravi', 'type': 'text'}
    assert organized['sangha']['label'] == 'Sangha'
    assert organized['sangha']['value'] == 'North > K1 > V2 > M3'
    assert organized['whatsapp_optin_consent']['value'] == 'Yes'
    assert 'sangha-khanda' not in organized


def test_list_responses(client, super_admin, login, make_form, make_submission):
    form_id = make_form(created_by_id=super_admin)
    make_submission(form_id, 'lead', name='Asha')
    make_submission(form_id, 'swayamsevak', name='Ravi')
    login()

    body = client.get('/admin/responses').get_json()
    assert body['pagination']['total'] == 2
    assert {r['collection'] for r in body['responses']} == {'lead', 'swayamsevak'}

    leads = client.get('/admin/responses', query_string={'collection': 'lead'}).get_json()['responses']
    assert [r['name'] for r in leads] == ['Asha']

    found = client.get('/admin/responses', query_string={'search': 'rav'}).get_json()['responses']
    assert [r['name'] for r in found] == ['Ravi']


def test_list_responses_with_unknown_collection(client, super_admin, login):
    login()
    assert client.get('/admin/responses', query_string={'collection': 'orders'}).status_code == 400


def test_regular_admin_sees_only_responses_to_own_forms(client, super_admin, admin, login, make_form, make_submission):
    own_form = make_form(title='Mine', custom_slug='mine', created_by_id=admin)
    other_form = make_form(title='Theirs', custom_slug='theirs', created_by_id=super_admin)
    mine = make_submission(own_form, 'lead')
    theirs = make_submission(other_form, 'lead')
    login('admin@example.com')

    rows = client.get('/admin/responses').get_json()['responses']
    assert [r['id'] for r in rows] == [mine]
    assert client.get(f'/admin/responses/{theirs}').status_code == 403


def test_get_single_response(client, super_admin, login, make_form, make_submission):
    form_id = make_form(created_by_id=super_admin)
    submission_id = make_submission(form_id, 'swayamsevak', responses=SANGHA_ANSWERS)
    login()

    body = client.get(f'/admin/responses/{submission_id}').get_json()
    assert body['collection'] == 'swayamsevak'
    assert body['response']['organizedResponses']['sangha']['value'] == 'North > K1 > V2 > M3'
    assert client.get('/admin/responses/missing').status_code == 404


def test_update_lead_response(app, client, super_admin, login, make_submission):
    submission_id = make_submission(collection='lead')
    login()

    response = client.put(f'/admin/responses/{submission_id}', json={'leadScore': 80, 'status': 'contacted'})

    assert response.status_code == 200
    with app.app_context():
        lead = db.session.get(LeadResponse, submission_id)
        assert lead.lead_score == 80
        assert lead.status == 'contacted'


def test_update_rejects_invalid_values(client, super_admin, login, make_submission):
    lead_id = make_submission(collection='lead')
    volunteer_id = make_submission(collection='swayamsevak')
    login()

    response = client.put(f'/admin/responses/{lead_id}', json={'leadScore': 150})
    assert response.status_code == 400
    assert response.get_json()['details'] == ['leadScore: Lead score must be between 0 and 100']

    assert client.put(f'/admin/responses/{lead_id}', json={'paymentStatus': 'refunded'}).status_code == 400
    assert client.put(f'/admin/responses/{volunteer_id}', json={'leadScore': 10}).status_code == 400


def test_delete_response(app, client, super_admin, login, make_submission):
    submission_id = make_submission(collection='swayamsevak')
    login()

    assert client.delete(f'/admin/responses/{submission_id}').status_code == 200
    with app.app_context():
        assert db.session.get(Submission, submission_id) is None


def test_bulk_delete(app, client, super_admin, login, make_submission):
    ids = [make_submission(collection='lead') for _ in range(3)]
    login()

    response = client.delete('/admin/responses/bulk', json={'responseIds': ids[:2] + ['missing']})

    assert response.get_json()['deletedCount'] == 2
    with app.app_context():
        assert [s.id for s in Submission.query.all()] == [ids[2]]


def test_bulk_update(app, client, super_admin, login, make_submission):
    lead_id = make_submission(collection='lead')
    volunteer_id = make_submission(collection='swayamsevak')
    login()

    response = client.post('/admin/responses/bulk', json={
        'operation': 'update',
        'responseIds': [lead_id, volunteer_id],
        'updates': {'status': 'qualified'},
    })

    body = response.get_json()
    assert body['matchedCount'] == 2
    assert body['modifiedCount'] == 1
    assert len(body['errors']) == 1
    with app.app_context():
        assert db.session.get(LeadResponse, lead_id).status == 'qualified'


def test_bulk_requires_ids(client, super_admin, login):
    login()
    assert client.delete('/admin/responses/bulk', json={'responseIds': []}).status_code == 400


# ------------------------------------------------------------------
# CSV export / import
# ------------------------------------------------------------------

def test_export_csv(client, super_admin, login, make_form, make_submission):
    form_id = make_form(created_by_id=super_admin)
    make_submission(form_id, 'lead', name='Asha', responses=[
        {'fieldId': 'full-name', 'fieldType': 'text', 'fieldLabel': 'Full Name', 'value': 'Asha'},
        {'fieldId': 'interests', 'fieldType': 'checkbox', 'fieldLabel': 'Interests', 'value': ['Yoga', 'Seva']},
    ])
    login()

    response = client.get('/admin/responses/export')

    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert 'attachment' in response.headers['Content-disposition']
    rows = list(csv.DictReader(io.StringIO(response.get_data(as_text=True))))
    assert len(rows) == 1
    assert rows[0]['Name'] == 'Asha'
    assert rows[0]['Collection'] == 'lead'
    assert rows[0]['Interests'] == 'Yoga, Seva'


def test_detect_collection():
    assert detect_collection(['Name', 'Email', 'Phone']) == 'lead'
    assert detect_collection(['Name', 'Sangha', 'District']) == 'swayamsevak'
    assert detect_collection(['Question 1', 'Question 2']) == 'form_response'


def upload(client, text, filename='people.csv', **fields):
    data = {'file': (io.BytesIO(text.encode('utf-8')), filename)}
    data.update(fields)
    return client.post('/admin/responses/import', data=data, content_type='multipart/form-data')


def test_import_leads_with_row_errors(app, client, super_admin, login):
    login()
    response = upload(client, (
        'Name,Email,Phone,Lead Score\n'
        'Asha,asha@example.com,9876543210,40\n'
        ',not-an-email,,\n'
        'Ravi,,9123456780,\n'
    ), source='walk-in')

    body = response.get_json()
    assert body['success'] is True
    result = body['upload']
    assert result['collection'] == 'lead'
    assert result['status'] == 'partial'
    assert result['totalRecords'] == 3
    assert result['successfulRecords'] == 2
    assert result['errors'] == ['Row 2: Invalid email: not-an-email']

    with app.app_context():
        leads = LeadResponse.query.order_by(LeadResponse.name).all()
        assert [(lead.name, lead.lead_score, lead.source) for lead in leads] == [('Asha', 40, 'walk-in'), ('Ravi', 0, 'walk-in')]
        assert leads[0].ip_address == 'bulk_upload'


def test_import_volunteers(app, client, super_admin, login):
    login()
    response = upload(client, 'Name,Sangha,District\nRavi,North,Pune\n,South,Mumbai\n')

    result = response.get_json()['upload']
    assert result['collection'] == 'swayamsevak'
    assert result['errors'] == ['Row 2: Name is required']
    with app.app_context():
        volunteer = SwayamsevakResponse.query.one()
        assert volunteer.sangha == 'North'
        assert volunteer.district == 'Pune'
        assert volunteer.swayamsevak_id.startswith('SW00001-')


def test_import_rejects_non_csv(client, super_admin, login):
    login()
    response = upload(client, 'irrelevant', filename='people.xlsx')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Only CSV files are supported'


def test_import_history(app, client, super_admin, login):
    login()
    upload(client, 'Name\nAsha\n', collection='leads')

    uploads = client.get('/admin/responses/imports').get_json()['uploads']
    assert len(uploads) == 1
    assert uploads[0]['collection'] == 'lead'
    assert uploads[0]['status'] == 'completed'
    assert uploads[0]['uploadedBy'] == 'super@example.com'
    with app.app_context():
        assert BulkUpload.query.count() == 1


def test_import_stops_at_row_limit(app, client, super_admin, login):
    app.config['MAX_BULK_UPLOAD_ROWS'] = 2
    login()
    response = upload(client, 'Name\nAsha\nRavi\nMeera\nKiran\nDev\n')

    result = response.get_json()['upload']
    assert result['status'] == 'partial'
    assert result['totalRecords'] == 2
    assert result['successfulRecords'] == 2
    assert result['errors'] == ['Upload limit of 2 rows exceeded; remaining rows were not imported']
    with app.app_context():
        assert LeadResponse.query.count() == 2


def test_organize_responses_skips_empty_sangha_levels(app, make_form, make_submission):
    answers = [a for a in SANGHA_ANSWERS if a['fieldId'] not in ('sangha-vibhaag', 'sangha-milan')]
    submission_id = make_submission(make_form(), 'swayamsevak', responses=answers)

    with app.app_context():
        submission = db.session.get(Submission, submission_id)
        organized = organize_responses(submission, submission.form)

    assert organized['sangha']['value'] == 'K1 > V2'
    assert organized['sangha']['details']['vibhaag'] == ''
