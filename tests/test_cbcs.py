"""
Tests for CBCS creation, student submissions and the optimal section allocator.
"""

import io
import os

import openpyxl
import pytest

from cbcs_allocation import CBCSAllocator, allocate_optimal
from models import (CBCS, Course, ElectiveBucket, ElectiveBucketCourse, Section, StudentCourse,
                    StudentCourseChoice, StudentElectiveSelection, db)

OFFERS = {1: [(10, 100), (11, 101)], 2: [(20, 200)]}


def choice(choice_id, regno, course_id, section_id, staff_id, preference):
    return {'id': choice_id, 'regno': regno, 'courseId': course_id, 'sectionId': section_id,
            'staffId': staff_id, 'preferenceOrder': preference}


class TestAllocator:
    def test_validate_selections(self) -> None:
        errors = CBCSAllocator().validate_selections([
            {'courseId': 1, 'sectionId': 10, 'staffId': 100},
            {'courseId': 1, 'sectionId': 10, 'staffId': 101},
            {'courseId': 9, 'sectionId': 10, 'staffId': 100},
        ], OFFERS)

        assert len(errors) == 2
        assert errors[0].startswith('Selection 2: section 10 with staff 101')
        assert errors[1] == 'Selection 3: course 9 is not part of this CBCS'

    def test_capacity_spreads_choosers(self) -> None:
        choices = [choice(i, f"S{i}", 1, 10, 100, 1) for i in range(1, 4)]
        choices.append(choice(4, 'S1', 1, 11, 101, 2))
        assert CBCSAllocator().section_capacities(choices, OFFERS) == {1: 2}

    def test_first_preference_with_room(self) -> None:
        choices = [
            choice(1, 'S1', 1, 11, 101, 1),
            choice(2, 'S1', 1, 10, 100, 2),
            choice(3, 'S1', 2, 20, 200, 3),
        ]
        allocations, stats = allocate_optimal(choices, OFFERS)

        assert [(a['courseId'], a['sectionId'], a['staffId'], a['fallback']) for a in allocations] == [
            (1, 11, 101, False), (2, 20, 200, False)]
        assert stats == {'students': 1, 'allocations': 2, 'fallbacks': 0}

    def test_full_sections_fall_back_to_least_loaded(self) -> None:
        choices = [choice(i, f"S{i}", 1, 10, 100, 1) for i in range(1, 4)]
        allocations, stats = CBCSAllocator().allocate(choices, OFFERS)

        assert [(a['regno'], a['sectionId'], a['fallback']) for a in allocations] == [
            ('S1', 10, False), ('S2', 10, False), ('S3', 11, True)]
        assert stats['fallbacks'] == 1

    def test_earliest_submission_is_served_first(self) -> None:
        choices = [choice(5, 'LATE', 1, 10, 100, 1), choice(2, 'EARLY', 1, 10, 100, 1),
                   choice(9, 'LAST', 1, 10, 100, 1)]
        allocations, _ = CBCSAllocator().allocate(choices, OFFERS)
        assert [a['regno'] for a in allocations] == ['EARLY', 'LATE', 'LAST']
        assert allocations[-1]['fallback'] is True

    def test_enrolled_courses_are_skipped(self) -> None:
        choices = [choice(1, 'S1', 1, 10, 100, 1), choice(2, 'S1', 2, 20, 200, 2)]
        allocations, stats = CBCSAllocator().allocate(choices, OFFERS, {'S1': {1}})
        assert [a['courseId'] for a in allocations] == [2]
        assert stats['students'] == 1


@pytest.fixture
def electives(semester):
    """CS3551 and CS3552 in the Open Electives bucket, two sections each."""
    courses = []
    for code, title in (('CS3551', 'Cloud Computing'), ('CS3552', 'Data Mining')):
        course = Course(course_code=code, semester_id=semester.id, course_title=title, category='OEC',
                        type='THEORY', credits=3)
        db.session.add(course)
        db.session.flush()
        for number in (1, 2):
            db.session.add(Section(course_id=course.id, section_name=f"Batch {number}"))
        courses.append(course)
    bucket = ElectiveBucket(semester_id=semester.id, bucket_number=1, bucket_name='Open Electives')
    bucket.entries = [ElectiveBucketCourse(course_id=course.id) for course in courses]
    db.session.add(bucket)
    db.session.commit()
    return courses


@pytest.fixture
def admin_headers(admin, auth_header):
    return auth_header(admin)


def create_cbcs(client, headers, cse, batch, semester, subjects, cbcs_type='FCFS'):
    response = client.post('/api/cbcs/create', headers=headers, json={
        'deptId': cse.id, 'batchId': batch.id, 'semesterId': semester.id, 'type': cbcs_type,
        'subjects': subjects})
    assert response.status_code == 201
    return response.get_json()['data']


def cloud_subject(electives, staff, other_staff):
    sections = list(electives[0].sections)
    return {'subject_id': electives[0].id, 'staffs': [
        {'sectionId': sections[0].id, 'staff_id': staff.id},
        {'sectionId': sections[1].id, 'staff_id': other_staff.id, 'staff_name': 'Dr. Two'},
    ]}


class TestGroupedCourses:
    def test_core_and_buckets(self, client, admin_headers, cse, batch, semester, course, students, electives,
                              staff_allocation) -> None:
        bucket = ElectiveBucket.query.first()
        db.session.add(StudentElectiveSelection(roll_number='23CSE001', bucket_id=bucket.id,
                                                course_id=electives[0].id))
        db.session.commit()

        response = client.get(f"/api/cbcs/course?deptId={cse.id}&batchId={batch.id}&semesterId={semester.id}",
                              headers=admin_headers)
        data = response.get_json()['data']

        core = data['Core'][0]
        assert core['courseCode'] == 'CS3501'
        assert core['total_students'] == 3
        assert core['sections'][0]['staffs'] == [{'staffId': staff_allocation.user_id, 'staffName': 'Staff One'}]
        assert core['sections'][1]['staffs'] == []

        bucket_courses = data['Elective Bucket 1 - Open Electives']
        assert [(row['courseCode'], row['total_students']) for row in bucket_courses] == [
            ('CS3551', 1), ('CS3552', 0)]

    def test_core_strength_default(self, client, admin_headers, cse, batch, semester, course) -> None:
        response = client.get(f"/api/cbcs/course?deptId={cse.id}&batchId={batch.id}&semesterId={semester.id}",
                              headers=admin_headers)
        assert response.get_json()['data']['Core'][0]['total_students'] == 120

    def test_admin_only(self, client, student_user, cse, batch, semester, auth_header) -> None:
        response = client.get(f"/api/cbcs/course?deptId={cse.id}&batchId={batch.id}&semesterId={semester.id}",
                              headers=auth_header(student_user))
        assert response.status_code == 403


class TestCreate:
    def test_creates_subjects_and_workbook(self, app, client, admin_headers, cse, batch, semester, electives,
                                           staff, other_staff) -> None:
        data = create_cbcs(client, admin_headers, cse, batch, semester,
                           [cloud_subject(electives, staff, other_staff)])

        assert data['type'] == 'FCFS'
        assert data['hasExcel'] is True
        subject = data['subjects'][0]
        assert (subject['courseCode'], subject['courseName'], subject['bucketName']) == (
            'CS3551', 'Cloud Computing', 'Core')
        assert [staff_row['staffId'] for staff_row in subject['staffs']] == [staff.id, other_staff.id]

        path = os.path.join(app.config['UPLOAD_FOLDER'], 'cbcs_excels', f"cbcs_allocation_{data['id']}.xlsx")
        ws = openpyxl.load_workbook(path)['CS3551']
        assert ws['C2'].value == f"staffId:{other_staff.id} | Dr. Two"

    def test_new_cbcs_closes_the_previous_one(self, client, admin_headers, cse, batch, semester, electives,
                                              staff, other_staff) -> None:
        first = create_cbcs(client, admin_headers, cse, batch, semester,
                            [cloud_subject(electives, staff, other_staff)])
        second = create_cbcs(client, admin_headers, cse, batch, semester,
                             [cloud_subject(electives, staff, other_staff)], 'OPTIMAL')

        assert db.session.get(CBCS, first['id']).is_active is False
        listed = client.get('/api/cbcs/getcbcs', headers=admin_headers).get_json()['data']
        assert [row['id'] for row in listed] == [second['id'], first['id']]
        detail = client.get(f"/api/cbcs/cbcs/{second['id']}", headers=admin_headers).get_json()['data']
        assert detail['type'] == 'OPTIMAL'

    def test_section_of_another_course(self, client, admin_headers, cse, batch, semester, course, electives,
                                       staff) -> None:
        response = client.post('/api/cbcs/create', headers=admin_headers, json={
            'deptId': cse.id, 'batchId': batch.id, 'semesterId': semester.id, 'type': 'FCFS',
            'subjects': [{'subject_id': electives[0].id,
                          'staffs': [{'sectionId': course.sections[0].id, 'staff_id': staff.id}]}]})
        assert response.status_code == 400

    def test_invalid_type_and_empty_subjects(self, client, admin_headers, cse, batch, semester) -> None:
        payload = {'deptId': cse.id, 'batchId': batch.id, 'semesterId': semester.id, 'type': 'LOTTERY',
                   'subjects': []}
        assert client.post('/api/cbcs/create', headers=admin_headers, json=payload).status_code == 400
        payload['type'] = 'FCFS'
        assert client.post('/api/cbcs/create', headers=admin_headers, json=payload).status_code == 400


class TestStudentView:
    def test_core_and_selected_subjects(self, client, student_user, admin_headers, cse, batch, semester,
                                        electives, staff, other_staff, auth_header) -> None:
        mining_sections = list(electives[1].sections)
        create_cbcs(client, admin_headers, cse, batch, semester, [
            cloud_subject(electives, staff, other_staff),
            {'subject_id': electives[1].id, 'bucketName': 'Open Electives',
             'staffs': [{'sectionId': mining_sections[0].id, 'staff_id': staff.id}]},
        ])
        url = f"/api/cbcs/student?regno=23cse001&batchId={batch.id}&deptId={cse.id}&semesterId={semester.id}"

        data = client.get(url, headers=auth_header(student_user)).get_json()['data']
        assert [subject['courseCode'] for subject in data['subjects']] == ['CS3551']
        assert data['submitted'] is False

        bucket = ElectiveBucket.query.first()
        db.session.add(StudentElectiveSelection(roll_number='23CSE001', bucket_id=bucket.id,
                                                course_id=electives[1].id))
        db.session.commit()
        data = client.get(url, headers=auth_header(student_user)).get_json()['data']
        assert [subject['courseCode'] for subject in data['subjects']] == ['CS3551', 'CS3552']

    def test_other_students_cbcs_is_forbidden(self, client, student_user, cse, batch, semester,
                                              auth_header) -> None:
        response = client.get(f"/api/cbcs/student?regno=23CSE002&batchId={batch.id}&deptId={cse.id}"
                              f"&semesterId={semester.id}", headers=auth_header(student_user))
        assert response.status_code == 403

    def test_no_active_cbcs(self, client, student_user, cse, batch, semester, auth_header) -> None:
        response = client.get(f"/api/cbcs/student?regno=23CSE001&batchId={batch.id}&deptId={cse.id}"
                              f"&semesterId={semester.id}", headers=auth_header(student_user))
        assert response.status_code == 404


class TestFcfsSubmission:
    @pytest.fixture
    def fcfs(self, client, admin_headers, cse, batch, semester, students, electives, staff, other_staff):
        return create_cbcs(client, admin_headers, cse, batch, semester,
                           [cloud_subject(electives, staff, other_staff)])

    def _submit(self, client, headers, fcfs, selections, regno='23CSE001'):
        return client.post('/api/cbcs/submission', headers=headers,
                           json={'regno': regno, 'cbcs_id': fcfs['id'], 'selections': selections})

    def test_enrolls_and_writes_workbook(self, app, client, fcfs, electives, other_staff, student_user,
                                         auth_header) -> None:
        section = list(electives[0].sections)[1]
        response = self._submit(client, auth_header(student_user), fcfs, [
            {'courseId': electives[0].id, 'sectionId': section.id, 'staffId': other_staff.id}])

        assert response.status_code == 201
        assert response.get_json()['data'] == {'enrolled': 1}
        enrollment = StudentCourse.query.filter_by(roll_number='23CSE001', course_id=electives[0].id).first()
        assert enrollment.section_id == section.id

        path = os.path.join(app.config['UPLOAD_FOLDER'], 'cbcs_excels', f"cbcs_allocation_{fcfs['id']}.xlsx")
        ws = openpyxl.load_workbook(path)['CS3551']
        assert (ws['C4'].value, ws['D4'].value) == ('23CSE001', 'Student 1')

    def test_selection_not_offered(self, client, fcfs, electives, staff, admin_headers) -> None:
        section = list(electives[0].sections)[1]
        response = self._submit(client, admin_headers, fcfs, [
            {'courseId': electives[0].id, 'sectionId': section.id, 'staffId': staff.id}])

        assert response.status_code == 400
        assert len(response.get_json()['details']['errors']) == 1

    def test_one_section_per_course(self, client, fcfs, electives, staff, other_staff, admin_headers) -> None:
        sections = list(electives[0].sections)
        response = self._submit(client, admin_headers, fcfs, [
            {'courseId': electives[0].id, 'sectionId': sections[0].id, 'staffId': staff.id},
            {'courseId': electives[0].id, 'sectionId': sections[1].id, 'staffId': other_staff.id}])
        assert response.get_json()['message'] == 'Duplicate selection: one section per course'

    def test_already_enrolled(self, client, fcfs, electives, staff, admin_headers) -> None:
        selection = {'courseId': electives[0].id, 'sectionId': list(electives[0].sections)[0].id,
                     'staffId': staff.id}
        assert self._submit(client, admin_headers, fcfs, [selection]).status_code == 201
        assert self._submit(client, admin_headers, fcfs, [selection]).status_code == 400

    def test_student_cannot_submit_for_others(self, client, fcfs, student_user, auth_header) -> None:
        response = self._submit(client, auth_header(student_user), fcfs, [], regno='23CSE002')
        assert response.status_code == 403

    def test_fcfs_cannot_be_allocated(self, client, fcfs, admin_headers) -> None:
        assert client.post(f"/api/cbcs/{fcfs['id']}/allocate", headers=admin_headers).status_code == 400


class TestOptimalAllocation:
    @pytest.fixture
    def optimal(self, client, admin_headers, cse, batch, semester, students, electives, staff, other_staff):
        return create_cbcs(client, admin_headers, cse, batch, semester,
                           [cloud_subject(electives, staff, other_staff)], 'OPTIMAL')

    @pytest.fixture
    def preferences(self, client, optimal, electives, staff, other_staff, admin_headers):
        """Everyone prefers Batch 1; 23CSE003 lists nothing else."""
        first, second = list(electives[0].sections)
        both = [{'courseId': electives[0].id, 'sectionId': first.id, 'staffId': staff.id},
                {'courseId': electives[0].id, 'sectionId': second.id, 'staffId': other_staff.id}]
        for regno, selections in (('23CSE001', both), ('23CSE002', both), ('23CSE003', both[:1])):
            response = client.post('/api/cbcs/submission', headers=admin_headers,
                                   json={'regno': regno, 'cbcs_id': optimal['id'], 'selections': selections})
            assert response.status_code == 201
        return first, second

    def test_submission_stores_preferences(self, client, optimal, preferences, admin_headers) -> None:
        rows = StudentCourseChoice.query.filter_by(roll_number='23CSE001').order_by(
            StudentCourseChoice.preference_order).all()
        assert [row.section_id for row in rows] == [section.id for section in preferences]
        assert StudentCourse.query.filter_by(roll_number='23CSE001').count() == 1

    def test_resubmission_replaces_choices(self, client, optimal, preferences, electives, other_staff,
                                           admin_headers) -> None:
        client.post('/api/cbcs/submission', headers=admin_headers, json={
            'regno': '23CSE001', 'cbcs_id': optimal['id'],
            'selections': [{'courseId': electives[0].id, 'sectionId': preferences[1].id,
                            'staffId': other_staff.id}]})
        assert StudentCourseChoice.query.filter_by(roll_number='23CSE001').count() == 1

    def test_allocate(self, client, optimal, preferences, electives, admin_headers) -> None:
        response = client.post(f"/api/cbcs/{optimal['id']}/allocate", headers=admin_headers)

        assert response.status_code == 200
        assert response.get_json()['data'] == {'students': 3, 'allocations': 3, 'fallbacks': 1}
        placed = {row.roll_number: row.section_id for row in
                  StudentCourse.query.filter_by(course_id=electives[0].id).all()}
        first, second = preferences
        assert placed == {'23CSE001': first.id, '23CSE002': first.id, '23CSE003': second.id}
        assert db.session.get(CBCS, optimal['id']).complete is True

        download = client.get(f"/api/cbcs/{optimal['id']}/download-excel", headers=admin_headers)
        ws = openpyxl.load_workbook(io.BytesIO(download.data))['CS3551']
        assert [ws['A4'].value, ws['A5'].value, ws['C4'].value] == ['23CSE001', '23CSE002', '23CSE003']

    def test_selection_status_follows_each_students_allocation(self, client, optimal, preferences, electives,
                                                                admin_headers) -> None:
        bucket = ElectiveBucket.query.first()
        for regno in ('23CSE001', '23CSE002', '23CSE003'):
            db.session.add(StudentElectiveSelection(roll_number=regno, bucket_id=bucket.id,
                                                    course_id=electives[0].id))
        db.session.add(StudentCourse(roll_number='23CSE001', course_id=electives[0].id,
                                     section_id=preferences[1].id))
        db.session.commit()

        response = client.post(f"/api/cbcs/{optimal['id']}/allocate", headers=admin_headers)

        assert response.get_json()['data']['allocations'] == 2
        statuses = {row.roll_number: row.status for row in StudentElectiveSelection.query.all()}
        assert statuses == {'23CSE001': 'pending', '23CSE002': 'allocated', '23CSE003': 'allocated'}

    def test_allocation_runs_once(self, client, optimal, preferences, electives, staff, admin_headers) -> None:
        client.post(f"/api/cbcs/{optimal['id']}/allocate", headers=admin_headers)

        assert client.post(f"/api/cbcs/{optimal['id']}/allocate", headers=admin_headers).status_code == 409
        closed = client.post('/api/cbcs/submission', headers=admin_headers, json={
            'regno': '23CSE001', 'cbcs_id': optimal['id'],
            'selections': [{'courseId': electives[0].id, 'sectionId': preferences[0].id, 'staffId': staff.id}]})
        assert closed.status_code == 400

    def test_nothing_to_allocate(self, client, optimal, admin_headers) -> None:
        assert client.post(f"/api/cbcs/{optimal['id']}/allocate", headers=admin_headers).status_code == 400

    def test_missing_workbook(self, client, optimal, admin_headers) -> None:
        os.remove(db.session.get(CBCS, optimal['id']).allocation_excel_path)
        assert client.get(f"/api/cbcs/{optimal['id']}/download-excel", headers=admin_headers).status_code == 404
