"""
Tests for the NPTEL catalogue, student enrollment, grade import and credit transfer.
"""

import io
from datetime import date

import pytest

from models import (Batch, ElectiveBucket, NptelCourse, NptelCreditTransfer, Regulation, RegulationCourse,
                    Semester, StudentElectiveSelection, StudentNptelEnrollment, db)


@pytest.fixture
def nptel_course(semester, admin):
    course = NptelCourse(course_code='NOC24CS01', course_title='Deep Learning', type='PEC', credits=3,
                         semester_id=semester.id, created_by=admin.id)
    db.session.add(course)
    db.session.commit()
    return course


@pytest.fixture
def enrollment(nptel_course, students):
    """23CSE001 is enrolled in the NPTEL course, no grade yet."""
    enrollment = StudentNptelEnrollment(roll_number=students[0].roll_number, nptel_course_id=nptel_course.id,
                                        semester_id=nptel_course.semester_id)
    db.session.add(enrollment)
    db.session.commit()
    return enrollment


def course_payload(semester, **overrides):
    payload = {'courseCode': 'noc24cs02', 'courseTitle': 'Cloud Computing', 'type': 'OEC', 'credits': 3,
               'semesterId': semester.id}
    payload.update(overrides)
    return payload


class TestNptelCatalogue:
    def test_add_course(self, client, admin, semester, auth_header) -> None:
        response = client.post('/api/admin/nptel-courses', headers=auth_header(admin),
                               json=course_payload(semester))
        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['courseCode'] == 'NOC24CS02'
        assert data['semesterNumber'] == 5
        assert data['branch'] == 'CSE'

    def test_duplicate_code_in_semester(self, client, admin, semester, nptel_course, auth_header) -> None:
        response = client.post('/api/admin/nptel-courses', headers=auth_header(admin),
                               json=course_payload(semester, courseCode='NOC24CS01'))
        assert response.status_code == 409

    def test_type_must_be_elective(self, client, admin, semester, auth_header) -> None:
        response = client.post('/api/admin/nptel-courses', headers=auth_header(admin),
                               json=course_payload(semester, type='ESC'))
        assert response.status_code == 400

    def test_inactive_semester(self, client, admin, semester, auth_header) -> None:
        semester.is_active = False
        db.session.commit()
        response = client.post('/api/admin/nptel-courses', headers=auth_header(admin),
                               json=course_payload(semester))
        assert response.status_code == 400
        assert response.get_json()['message'] == f"No active semester found with ID {semester.id}"

    def test_bulk_import_reports_rows(self, client, admin, semester, auth_header) -> None:
        response = client.post('/api/admin/nptel-courses/bulk', headers=auth_header(admin), json={'courses': [
            course_payload(semester),
            course_payload(semester, courseCode='NOC24CS03', credits=0),
            course_payload(semester),
        ]})

        data = response.get_json()['data']
        assert data['importedCount'] == 1
        assert data['errors'] == [
            "Row 3: 'credits' must be at least 1",
            'Row 4: NPTEL course with code NOC24CS02 already exists in this semester',
        ]

    def test_update_and_delete(self, client, admin, semester, nptel_course, auth_header) -> None:
        headers = auth_header(admin)
        response = client.put(f"/api/admin/nptel-courses/{nptel_course.id}", headers=headers,
                              json=course_payload(semester, courseCode='NOC24CS01', credits=4))
        assert response.status_code == 200
        assert response.get_json()['data']['credits'] == 4

        assert client.delete(f"/api/admin/nptel-courses/{nptel_course.id}", headers=headers).status_code == 200
        assert client.get('/api/admin/nptel-courses', headers=headers).get_json()['data'] == []
        assert client.delete(f"/api/admin/nptel-courses/{nptel_course.id}", headers=headers).status_code == 404


class TestNptelGrades:
    def test_grade_import(self, client, admin, semester, enrollment, auth_header) -> None:
        sheet = (
            "Regno,NOC24CS01,NOC99XX01\n"
            "23CSE001,A+,O\n"
            "23CSE002,B,O\n"
            "23CSE003,Q,O\n"
        )
        response = client.post('/api/admin/nptel-grades/import', headers=auth_header(admin),
                               data={'semesterId': str(semester.id),
                                     'file': (io.BytesIO(sheet.encode()), 'nptel.csv')},
                               content_type='multipart/form-data')

        assert response.status_code == 200
        assert response.get_json()['data'] == {
            'updated': 1, 'notEnrolled': 1, 'skippedCourses': 1, 'invalidGrades': 1}
        assert enrollment.grade == 'A+'


class TestStudentEnrollment:
    def test_catalogue_marks_enrolled_courses(self, client, student_user, semester, enrollment,
                                              auth_header) -> None:
        response = client.get(f"/api/student/nptel-courses?semesterId={semester.id}",
                              headers=auth_header(student_user))
        assert [(c['courseCode'], c['isEnrolled']) for c in response.get_json()['data']] == [('NOC24CS01', True)]

    def test_enroll_is_idempotent(self, client, student_user, semester, nptel_course, auth_header) -> None:
        headers = auth_header(student_user)
        payload = {'semesterId': semester.id, 'nptelCourseIds': [nptel_course.id]}

        first = client.post('/api/student/nptel-enroll', headers=headers, json=payload)
        assert first.get_json()['data'] == {'enrolledCount': 1}
        second = client.post('/api/student/nptel-enroll', headers=headers, json=payload)
        assert second.get_json()['data'] == {'enrolledCount': 0}

        enrollments = client.get('/api/student/nptel-enrollments', headers=headers).get_json()['data']
        assert [item['courseCode'] for item in enrollments] == ['NOC24CS01']

    def test_unknown_course_is_rejected(self, client, student_user, semester, nptel_course, auth_header) -> None:
        response = client.post('/api/student/nptel-enroll', headers=auth_header(student_user),
                               json={'semesterId': semester.id, 'nptelCourseIds': [nptel_course.id, 999]})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'One or more courses are invalid or not available'
        assert StudentNptelEnrollment.query.count() == 0

    def test_semester_of_another_batch(self, client, student_user, auth_header) -> None:
        other_batch = Batch(degree='B.E', branch='ECE', batch='2023', batch_years='2023-2027')
        db.session.add(other_batch)
        db.session.flush()
        other_semester = Semester(batch_id=other_batch.id, semester_number=5,
                                  start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))
        db.session.add(other_semester)
        db.session.commit()

        response = client.post('/api/student/nptel-enroll', headers=auth_header(student_user),
                               json={'semesterId': other_semester.id, 'nptelCourseIds': [1]})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Semester does not belong to your batch'


class TestCreditTransfer:
    def test_request_needs_a_passing_grade(self, client, student_user, enrollment, auth_header) -> None:
        headers = auth_header(student_user)
        assert client.post('/api/student/nptel-credit-transfer', headers=headers,
                           json={'enrollmentId': enrollment.id}).status_code == 400

        enrollment.grade = 'U'
        db.session.commit()
        assert client.post('/api/student/nptel-credit-transfer', headers=headers,
                           json={'enrollmentId': enrollment.id}).status_code == 400

    def test_other_students_enrollment(self, client, student_user, students, nptel_course, auth_header) -> None:
        other = StudentNptelEnrollment(roll_number=students[1].roll_number, nptel_course_id=nptel_course.id,
                                       semester_id=nptel_course.semester_id, grade='O')
        db.session.add(other)
        db.session.commit()

        response = client.post('/api/student/nptel-credit-transfer', headers=auth_header(student_user),
                               json={'enrollmentId': other.id})
        assert response.status_code == 404

    def test_approval_flow(self, client, admin, student_user, enrollment, auth_header) -> None:
        enrollment.grade = 'A'
        db.session.commit()
        student_headers = auth_header(student_user)
        admin_headers = auth_header(admin)

        requested = client.post('/api/student/nptel-credit-transfer', headers=student_headers,
                                json={'enrollmentId': enrollment.id})
        assert requested.get_json()['data']['status'] == 'pending'
        transfer_id = requested.get_json()['data']['transferId']

        pending = client.get('/api/admin/nptel-credit-transfers?status=pending', headers=admin_headers)
        assert [item['transferId'] for item in pending.get_json()['data']] == [transfer_id]

        invalid = client.post('/api/admin/nptel-credit-transfer-action', headers=admin_headers,
                              json={'transferId': transfer_id, 'action': 'maybe'})
        assert invalid.status_code == 400

        approved = client.post('/api/admin/nptel-credit-transfer-action', headers=admin_headers,
                               json={'transferId': transfer_id, 'action': 'approved', 'remarks': 'ok'})
        assert approved.get_json()['data']['status'] == 'approved'
        assert approved.get_json()['data']['reviewedAt'] is not None

        again = client.post('/api/admin/nptel-credit-transfer-action', headers=admin_headers,
                            json={'transferId': transfer_id, 'action': 'rejected'})
        assert again.status_code == 409
        resubmitted = client.post('/api/student/nptel-credit-transfer', headers=student_headers,
                                  json={'enrollmentId': enrollment.id})
        assert resubmitted.status_code == 409

    def test_rejected_request_can_be_resubmitted(self, client, admin, student_user, enrollment,
                                                 auth_header) -> None:
        enrollment.grade = 'B+'
        db.session.commit()
        transfer = NptelCreditTransfer(enrollment_id=enrollment.id, roll_number=enrollment.roll_number,
                                       nptel_course_id=enrollment.nptel_course_id, grade='B',
                                       status='rejected', reviewed_by=admin.id, remarks='certificate missing')
        db.session.add(transfer)
        db.session.commit()

        response = client.post('/api/student/nptel-credit-transfer', headers=auth_header(student_user),
                               json={'enrollmentId': enrollment.id})
        data = response.get_json()['data']
        assert data['transferId'] == transfer.id
        assert data['status'] == 'pending'
        assert data['grade'] == 'B+'
        assert data['remarks'] is None


class TestElectiveProgress:
    def test_batch_without_regulation(self, client, student_user, auth_header) -> None:
        response = client.get('/api/student/oec-pec-progress', headers=auth_header(student_user))
        assert response.status_code == 404

    def test_progress_counts_nptel_and_college_electives(self, client, student_user, batch, cse, semester,
                                                         course, enrollment, auth_header) -> None:
        regulation = Regulation(department_id=cse.id, regulation_year='2021')
        db.session.add(regulation)
        db.session.flush()
        for code, category in (('CS3591', 'PEC'), ('CS3691', 'PEC'), ('OE3351', 'OEC'), ('MA3151', 'BSC')):
            db.session.add(RegulationCourse(regulation_id=regulation.id, semester_number=5, course_code=code,
                                            course_title=code, category=category, type='THEORY'))
        batch.regulation_id = regulation.id

        enrollment.grade = 'O'
        db.session.add(NptelCreditTransfer(enrollment_id=enrollment.id, roll_number=enrollment.roll_number,
                                           nptel_course_id=enrollment.nptel_course_id, grade='O',
                                           status='approved'))
        bucket = ElectiveBucket(semester_id=semester.id, bucket_number=1, bucket_name='Professional Elective')
        db.session.add(bucket)
        db.session.flush()
        db.session.add(StudentElectiveSelection(roll_number='23CSE001', bucket_id=bucket.id, course_id=course.id,
                                                status='allocated'))
        db.session.commit()

        response = client.get('/api/student/oec-pec-progress', headers=auth_header(student_user))

        assert response.get_json()['data'] == {
            'required': {'OEC': 1, 'PEC': 2},
            'completed': {'OEC': 0, 'PEC': 2},
            'remaining': {'OEC': 1, 'PEC': 0},
            'fromNptel': {'OEC': 0, 'PEC': 1},
            'fromCollege': {'OEC': 0, 'PEC': 1},
        }
