import io
import os

from PIL import Image


def png_bytes(size=(40, 30)):
    buf = io.BytesIO()
    Image.new('RGB', size, 'purple').save(buf, format='PNG')
    buf.seek(0)
    return buf


def upload(client, data, name='swatch.png', **form):
    form['file'] = (data, name)
    return client.post('/api/files', data=form, content_type='multipart/form-data')


def test_image_upload_writes_file_and_thumbnail(app, api):
    response = upload(api, png_bytes(), description='Colour swatch')
    assert response.status_code == 201
    body = response.get_json()
    assert body['fileType'] == 'image'
    assert body['originalName'] == 'swatch.png'
    assert body['thumbnailUrl'].endswith(f"thumb_{body['fileName']}")

    folder = app.config['UPLOAD_FOLDER']
    assert os.path.exists(os.path.join(folder, body['fileName']))
    assert os.path.exists(os.path.join(folder, f"thumb_{body['fileName']}"))


def test_free_plan_allows_one_file(api):
    assert upload(api, png_bytes()).status_code == 201
    response = upload(api, io.BytesIO(b'notes'), name='notes.txt')
    assert response.status_code == 403
    assert response.get_json()['resource'] == 'fileAttachments'


def test_disallowed_extension(api):
    response = upload(api, io.BytesIO(b'MZ'), name='tool.exe')
    assert response.status_code == 400


def test_attach_and_list_for_material(studio, make_material):
    material = make_material(client=studio)
    record = upload(studio, io.BytesIO(b'safety data'), name='sds.pdf').get_json()

    attached = studio.post(f"/api/files/{record['id']}/attach",
                           json={'entityType': 'material', 'entityId': material['id']})
    assert attached.status_code == 201

    again = studio.post(f"/api/files/{record['id']}/attach",
                        json={'entityType': 'material', 'entityId': material['id']})
    assert again.status_code == 400

    files = studio.get(f"/api/raw-materials/{material['id']}/files").get_json()
    assert [f['originalName'] for f in files] == ['sds.pdf']

    detached = studio.post(f"/api/files/{record['id']}/detach",
                           json={'entityType': 'material', 'entityId': material['id']})
    assert detached.status_code == 200
    assert studio.get(f"/api/materials/{material['id']}/files").get_json() == []


def test_delete_file_removes_it_from_disk(app, api):
    record = upload(api, io.BytesIO(b'hello'), name='notes.txt').get_json()
    path = os.path.join(app.config['UPLOAD_FOLDER'], record['fileName'])
    assert os.path.exists(path)

    assert api.delete(f"/api/files/{record['id']}").status_code == 200
    assert not os.path.exists(path)
    assert api.get('/api/files').get_json() == []
