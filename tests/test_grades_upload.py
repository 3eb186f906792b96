"""
Tests for the grade sheet upload and the GPA/CGPA lookups.
"""

import io
from datetime import date

import pytest

from models import Course, Semester, StudentGrade, StudentSemesterGPA, db

SHEET = (
    "Regno,CS3501,CS3502,XX9999\n"
    "23CSE001,O,A,O\n"
    "23CSE002,U,B,O\n"
    "23CSE003,-,Z,O\n"
    "NOPE001,O,O,O\n"
)


@pytest.fixture
def networks(semester):
    course = Course(course_code='CS3502', semester_id=semester.id, course_title='Computer Networks',
                    category='PEC', type='THEORY', credits=3)
    db.session.add(course)
    db.session.commit()
    return course


def _upload(client, headers, semester_id, content=SHEET):
    return client.post('/api/admin/grades/import', headers=headers,
                       data={'semesterId': str(semester_id), 'file': (io.BytesIO(content.encode()), 'grades.csv')},
                       content_type='multipart/form-data')


class TestGradeImport:
    def test_counts(self, client, admin, semester, students, networks, auth_header) -> None:
        response = _upload(client, auth_header(admin), semester.id)

        assert response.status_code == 200
        assert response.get_json()['data'] == {
            'inserted': 4,
            'updated': 0,
            'skippedStudents': 1,
            'skippedCourses': 1,
            'invalidGrades': 1,
            'totalValidRecords': 4,
            'studentsWithGPA': 2,
        }

    def test_reupload_updates(self, client, admin, semester, students, networks, auth_header) -> None:
        headers = auth_header(admin)
        _upload(client, headers, semester.id)
        data = _upload(client, headers, semester.id).get_json()['data']

        assert data['inserted'] == 0
        assert data['updated'] == 4
        assert StudentGrade.query.count() == 4

    def test_gpa_is_stored(self, client, admin, semester, students, networks, auth_header) -> None:
        _upload(client, auth_header(admin), semester.id)

        record = StudentSemesterGPA.query.filter_by(roll_number='23CSE001', semester_id=semester.id).first()
        assert record.gpa == pytest.approx(9.14)
        assert record.cgpa == pytest.approx(9.14)
        only_b = StudentSemesterGPA.query.filter_by(roll_number='23CSE002').first()
        assert only_b.gpa == 6.0

    def test_sheet_without_regno(self, client, admin, semester, auth_header) -> None:
        response = _upload(client, auth_header(admin), semester.id, content="Name,CS3501\nA,O\n")
        assert response.status_code == 400

    def test_semester_is_required(self, client, admin, auth_header) -> None:
        response = client.post('/api/admin/grades/import', headers=auth_header(admin),
                               data={'file': (io.BytesIO(SHEET.encode()), 'grades.csv')},
                               content_type='multipart/form-data')
        assert response.status_code == 400

    def test_unreadable_xls_is_rejected(self, client, admin, semester, auth_header) -> None:
        fake_xls = b'\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1' + b'\x00' * 504
        response = client.post('/api/admin/grades/import', headers=auth_header(admin),
                               data={'semesterId': str(semester.id), 'file': (io.BytesIO(fake_xls), 'grades.xls')},
                               content_type='multipart/form-data')

        assert response.status_code == 400
        assert response.get_json()['message'].startswith('Could not read the uploaded file')


class TestGpaLookups:
    def test_gpa_and_missing_gpa(self, client, admin, semester, students, networks, auth_header) -> None:
        headers = auth_header(admin)
        _upload(client, headers, semester.id)

        graded = client.get(f"/api/admin/grades/gpa?regno=23cse001&semesterId={semester.id}", headers=headers)
        assert graded.get_json()['data']['gpa'] == 9.14
        blank = client.get(f"/api/admin/grades/gpa?regno=23CSE003&semesterId={semester.id}", headers=headers)
        assert blank.get_json()['data']['gpa'] == '-'

    def test_cgpa_spans_earlier_semesters(self, client, admin, batch, semester, students, networks,
                                          auth_header) -> None:
        headers = auth_header(admin)
        _upload(client, headers, semester.id)
        later = Semester(batch_id=batch.id, semester_number=6, start_date=date(2024, 6, 1),
                         end_date=date(2024, 11, 30))
        db.session.add(later)
        db.session.flush()
        db.session.add(Course(course_code='CS3601', semester_id=later.id, course_title='Distributed Systems',
                              category='PEC', type='THEORY', credits=3))
        db.session.commit()
        _upload(client, headers, later.id, content="Regno,CS3601\n23CSE001,B\n")

        response = client.get(f"/api/admin/grades/cgpa?regno=23CSE001&upToSemesterId={later.id}", headers=headers)
        # (4*10 + 3*8 + 3*6) / 10
        assert response.get_json()['data']['cgpa'] == 8.2
        semester_only = client.get(f"/api/admin/grades/gpa?regno=23CSE001&semesterId={later.id}", headers=headers)
        assert semester_only.get_json()['data']['gpa'] == 6.0

    def test_missing_parameters(self, client, admin, auth_header) -> None:
        response = client.get('/api/admin/grades/cgpa?regno=23CSE001', headers=auth_header(admin))
        assert response.status_code == 400

    def test_students_for_batch(self, client, admin, students, auth_header) -> None:
        response = client.get('/api/admin/grades/students?branch=CSE&batch=2023', headers=auth_header(admin))
        assert [row['regno'] for row in response.get_json()['data']] == ['23CSE001', '23CSE002', '23CSE003']

    def test_unknown_batch(self, client, admin, auth_header) -> None:
        response = client.get('/api/admin/grades/students?branch=CSE&batch=1990', headers=auth_header(admin))
        assert response.status_code == 404
