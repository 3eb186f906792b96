"""
Tests for admin staff allocation and the staff course request workflow.
"""

from models import Course, CourseRequest, StaffCourse, db


def _request(client, headers, course_id):
    return client.post(f"/api/staff/request/{course_id}", headers=headers)


class TestAllocation:
    def test_allocate_and_list(self, client, admin, staff, course, sections, auth_header) -> None:
        headers = auth_header(admin)
        response = client.post(f"/api/admin/courses/{course.id}/staff", headers=headers,
                               json={'userId': staff.id, 'sectionId': sections[0].id})
        assert response.status_code == 201

        listed = client.get(f"/api/admin/courses/{course.id}/staff", headers=headers).get_json()['data']
        assert [(row['staffName'], row['sectionName']) for row in listed] == [('Staff One', 'Batch 1')]
        mine = client.get(f"/api/admin/staff/{staff.id}/courses", headers=headers).get_json()['data']
        assert mine[0]['courseCode'] == 'CS3501'

    def test_duplicate_allocation(self, client, admin, staff_allocation, course, sections, auth_header) -> None:
        response = client.post(f"/api/admin/courses/{course.id}/staff", headers=auth_header(admin),
                               json={'userId': staff_allocation.user_id, 'sectionId': sections[0].id})
        assert response.status_code == 409

    def test_only_staff_can_be_allocated(self, client, admin, course, sections, auth_header) -> None:
        response = client.post(f"/api/admin/courses/{course.id}/staff", headers=auth_header(admin),
                               json={'userId': admin.id, 'sectionId': sections[0].id})
        assert response.status_code == 400

    def test_move_allocation(self, client, admin, staff_allocation, sections, auth_header) -> None:
        response = client.patch(f"/api/admin/staff-courses/{staff_allocation.id}", headers=auth_header(admin),
                                json={'sectionId': sections[1].id})
        assert response.status_code == 200
        assert response.get_json()['data']['sectionName'] == 'Batch 2'

    def test_remove_allocation(self, client, admin, staff_allocation, auth_header) -> None:
        allocation_id = staff_allocation.id
        response = client.delete(f"/api/admin/staff-courses/{allocation_id}", headers=auth_header(admin))
        assert response.status_code == 200
        assert db.session.get(StaffCourse, allocation_id) is None

    def test_users_filter(self, client, admin, staff, cse, auth_header) -> None:
        response = client.get(f"/api/admin/users?role=staff&deptId={cse.id}", headers=auth_header(admin))
        assert [row['email'] for row in response.get_json()['data']] == ['staff1@college.edu']


class TestCourseRequests:
    def test_available_courses_show_status(self, client, staff, course, auth_header) -> None:
        headers = auth_header(staff)
        before = client.get('/api/staff/available-courses', headers=headers).get_json()['data']
        assert [(row['courseCode'], row['status']) for row in before] == [('CS3501', 'AVAILABLE')]
        assert before[0]['sectionsCount'] == 2
        assert before[0]['assignedCount'] == 0

        assert _request(client, headers, course.id).status_code == 201
        after = client.get('/api/staff/available-courses', headers=headers).get_json()['data']
        assert after[0]['status'] == 'PENDING'

    def test_duplicate_pending_request(self, client, staff, course, auth_header) -> None:
        headers = auth_header(staff)
        _request(client, headers, course.id)
        assert _request(client, headers, course.id).status_code == 400

    def test_other_department_course_is_forbidden(self, client, ece_staff, course, auth_header) -> None:
        assert _request(client, auth_header(ece_staff), course.id).status_code == 403

    def test_accept_assigns_first_free_section(self, client, admin, staff, course, sections, auth_header) -> None:
        request_id = _request(client, auth_header(staff), course.id).get_json()['data']['requestId']
        response = client.post(f"/api/admin/requests/{request_id}/accept", headers=auth_header(admin))

        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['sectionId'] == sections[0].id
        assert data['autoRejected'] == 0
        assert data['request']['status'] == 'ACCEPTED'

    def test_last_section_rejects_other_pending(self, client, admin, staff, other_staff, course, sections,
                                                auth_header) -> None:
        db.session.add(StaffCourse(user_id=other_staff.id, course_id=course.id, section_id=sections[0].id))
        db.session.commit()
        first = _request(client, auth_header(staff), course.id).get_json()['data']['requestId']
        second = _request(client, auth_header(other_staff), course.id).get_json()['data']['requestId']

        response = client.post(f"/api/admin/requests/{first}/accept", headers=auth_header(admin))

        assert response.get_json()['data']['autoRejected'] == 1
        assert db.session.get(CourseRequest, second).status == 'REJECTED'

    def test_accept_when_all_sections_filled(self, client, admin, staff, other_staff, course, sections,
                                             auth_header) -> None:
        for section in sections:
            db.session.add(StaffCourse(user_id=other_staff.id, course_id=course.id, section_id=section.id))
        db.session.commit()
        request_id = _request(client, auth_header(staff), course.id).get_json()['data']['requestId']

        response = client.post(f"/api/admin/requests/{request_id}/accept", headers=auth_header(admin))
        assert response.status_code == 400
        assert response.get_json()['message'] == 'All sections are filled'

    def test_accept_without_sections(self, client, admin, staff, semester, auth_header) -> None:
        bare = Course(course_code='CS3599', semester_id=semester.id, course_title='Seminar', category='EEC',
                      type='PRACTICAL', credits=1)
        db.session.add(bare)
        db.session.commit()
        request_id = _request(client, auth_header(staff), bare.id).get_json()['data']['requestId']

        response = client.post(f"/api/admin/requests/{request_id}/accept", headers=auth_header(admin))
        assert response.get_json()['message'] == 'No sections available for this course'

    def test_reject_then_resend(self, client, admin, staff, course, auth_header) -> None:
        headers = auth_header(staff)
        request_id = _request(client, headers, course.id).get_json()['data']['requestId']
        rejected = client.post(f"/api/admin/requests/{request_id}/reject", headers=auth_header(admin))
        assert rejected.get_json()['data']['status'] == 'REJECTED'

        recent = client.get('/api/admin/requests/recent', headers=auth_header(admin)).get_json()['data']
        assert [row['requestId'] for row in recent] == [request_id]

        resent = client.post(f"/api/staff/resend/{request_id}", headers=headers)
        assert resent.get_json()['data']['status'] == 'PENDING'
        pending = client.get('/api/admin/requests/pending', headers=auth_header(admin)).get_json()['data']
        assert pending[0]['requestId'] == request_id

    def test_resend_only_rejected(self, client, staff, course, auth_header) -> None:
        headers = auth_header(staff)
        request_id = _request(client, headers, course.id).get_json()['data']['requestId']
        assert client.post(f"/api/staff/resend/{request_id}", headers=headers).status_code == 400

    def test_cancel_pending(self, client, staff, course, auth_header) -> None:
        headers = auth_header(staff)
        request_id = _request(client, headers, course.id).get_json()['data']['requestId']
        assert client.delete(f"/api/staff/request/{request_id}", headers=headers).status_code == 200
        assert client.get('/api/staff/my-requests', headers=headers).get_json()['data'] == []

    def test_cannot_cancel_someone_elses_request(self, client, staff, other_staff, course, auth_header) -> None:
        request_id = _request(client, auth_header(staff), course.id).get_json()['data']['requestId']
        response = client.delete(f"/api/staff/request/{request_id}", headers=auth_header(other_staff))
        assert response.status_code == 403

    def test_leave_course_withdraws_request(self, client, admin, staff, course, auth_header) -> None:
        headers = auth_header(staff)
        request_id = _request(client, headers, course.id).get_json()['data']['requestId']
        client.post(f"/api/admin/requests/{request_id}/accept", headers=auth_header(admin))
        allocation = client.get('/api/staff/courses', headers=headers).get_json()['data'][0]

        response = client.delete(f"/api/staff/leave/{allocation['staffCourseId']}", headers=headers)
        assert response.status_code == 200
        assert db.session.get(CourseRequest, request_id).status == 'WITHDRAWN'
        assert client.get('/api/staff/courses', headers=headers).get_json()['data'] == []

        again = _request(client, headers, course.id)
        assert again.status_code == 201
        assert again.get_json()['data']['status'] == 'PENDING'
